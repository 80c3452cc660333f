"""
Framework integrations for toolguard.

Each adapter lives in its own module and imports its framework lazily:
``toolguard.integrations.langchain`` and ``toolguard.integrations.pydantic_ai``.
"""
