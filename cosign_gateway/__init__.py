"""
cosign_gateway package initializer

Keep this module lightweight. Do not import the Solana stack or the web app
here, so tooling can import settings without pulling in RPC clients.
"""

__all__ = []
