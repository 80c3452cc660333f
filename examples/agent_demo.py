"""
Simulation of an AI Agent using toolguard.

This demonstrates how `toolguard` sits between an agent loop and the machine.
The agent (simulated here) emits tool calls dynamically; toolguard runs the
safe ones and turns the dangerous ones into structured errors.
"""

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path

from toolguard import ExecSettings, ProcessRunner, call_exec_tool, call_fetch_tool


@dataclass
class AgentAction:
    thought: str
    tool: str
    arguments: dict = field(default_factory=dict)


class MockLLM:
    """Simulates an LLM acting on a user request."""

    def __init__(self):
        self.step = 0

    def next_action(self) -> AgentAction | None:
        """Returns the next tool call the 'AI' wants to make."""
        actions = [
            # Innocent exploration
            AgentAction(
                thought="Which node version is available?",
                tool="exec",
                arguments={"command": "node", "args": ["-v"]},
            ),
            # Doing work (safe)
            AgentAction(
                thought="Let me initialise a repository.",
                tool="exec",
                arguments={"command": "git", "args": ["init"]},
            ),
            # Escaping the workspace (Dangerous!)
            AgentAction(
                thought="I'll look at the repository one level up.",
                tool="exec",
                arguments={"command": "git", "args": ["-C", "..", "log"]},
            ),
            # Not on the allowlist (Dangerous!)
            AgentAction(
                thought="I should clean up the machine.",
                tool="exec",
                arguments={"command": "rm", "args": ["-rf", "/"]},
            ),
            # Cloud metadata (Dangerous!)
            AgentAction(
                thought="I'll read the instance credentials.",
                tool="fetch",
                arguments={"url": "http://169.254.169.254/latest/meta-data/"},
            ),
            # Public page (safe)
            AgentAction(
                thought="Let me read the docs page.",
                tool="fetch",
                arguments={"url": "https://example.com", "maxBytes": 2048},
            ),
        ]

        if self.step < len(actions):
            action = actions[self.step]
            self.step += 1
            return action
        return None


async def run_tool(action: AgentAction, runner: ProcessRunner) -> dict:
    """
    The tools exposed to the Agent.
    Every call comes back as a structured result, never an exception.
    """
    print(f"  [Tool] {action.tool}: {json.dumps(action.arguments)}")
    if action.tool == "exec":
        result = await call_exec_tool(action.arguments, runner=runner)
    else:
        result = await call_fetch_tool(action.arguments)
    return result.to_dict()


async def main():
    print("🤖 Agent initializing...")
    print("🔒 toolguard active: git/npm/node only, public URLs only\n")

    llm = MockLLM()

    # Create a workspace for the agent
    workspace = Path("./workspace").resolve()
    workspace.mkdir(parents=True, exist_ok=True)
    runner = ProcessRunner(ExecSettings(cwd=str(workspace)))

    while True:
        action = llm.next_action()
        if not action:
            print("✅ Agent finished task.")
            break

        print(f"🤖 Thought: {action.thought}")

        output = await run_tool(action, runner)

        if output["ok"]:
            summary = output.get("stdout") or f"HTTP {output.get('status')}"
            print(f"  -> Result: {summary.strip()[:80]}")
        else:
            error = output["error"]
            print(f"🛡️ BLOCKED [{error['code']}]: {error['message']}")
        print("-" * 50)


if __name__ == "__main__":
    asyncio.run(main())
