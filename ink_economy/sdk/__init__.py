"""
SDK for the INK economy.

Wraps paid provider calls so they are charged and refunded through the ledger.
"""

from .metered_client import MeteredImageClient, MeteredResult, OpenAIImageProvider

__all__ = ["MeteredImageClient", "MeteredResult", "OpenAIImageProvider"]
