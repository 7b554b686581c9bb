"""
routerchat: streaming chat client for OpenRouter-style LLM gateways.
"""

__version__ = "0.1.0"
