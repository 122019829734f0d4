"""
SDK for droplets consuming centrally managed credentials.
"""

from .openai_client import KeyedOpenAI, KeyServiceError

__all__ = ["KeyedOpenAI", "KeyServiceError"]
