"""
LangChain Recall: cross-session conversational memory for chat agents.
"""

__version__ = "0.1.0"
