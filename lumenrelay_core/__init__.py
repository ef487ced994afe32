"""
LumenRelay - submit Stellar payments from an operator-held signing key.

Key features:
- Key custody: configured secret or ephemeral keypair, never exposed
- Destination preflight before any sequence number is consumed
- Native and issued-asset payments resolved to one tagged variant
- One fetch-assemble-sign-submit pass per request, no hidden retries
- Typed error taxonomy mapped onto HTTP status codes
"""

__version__ = "1.0.0"
__all__ = [
    "errors",
    "assets",
    "models",
    "custody",
    "gateway",
    "preflight",
    "assembler",
    "pipeline",
    "api",
    "config",
    "logging_config",
]
