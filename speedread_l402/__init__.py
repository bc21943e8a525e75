"""
⚡ speedread-l402: L402 Lightning paywall for the SpeedRead document library.

Paid documents are released only against an HMAC-signed access token bound
to a Lightning invoice that has been paid, either to the platform node or
directly to the creator's Lightning Address.

Usage:
    from speedread_l402 import create_app

    app = create_app()          # settings from SPEEDREAD_* / MACAROON_SECRET

Or run the service:
    python -m speedread_l402
"""

__version__ = "0.1.0"

from .app import create_app
from .challenge import Challenge, ChallengeBuilder
from .errors import (
    STATUS_CODES,
    AccessError,
    ErrorKind,
    InvoiceCreationFailed,
    UpstreamUnavailable,
)
from .gate import AccessGate, Decision, GateResult, extract_credentials
from .l402 import (
    L402Credentials,
    format_challenge,
    format_challenge_body,
    parse_authorization,
)
from .macaroon import (
    AccessToken,
    TokenData,
    VerifyResult,
    decode,
    mint,
    verify,
    verify_preimage,
)
from .resources import PaymentType, ProtectedResource
from .stats import GateStats
from .verifier import Outcome, PaymentVerifier, Verification

__all__ = [
    # Token codec
    "mint",
    "decode",
    "verify",
    "verify_preimage",
    "AccessToken",
    "TokenData",
    "VerifyResult",
    # L402
    "format_challenge",
    "format_challenge_body",
    "parse_authorization",
    "L402Credentials",
    # Gate
    "Challenge",
    "ChallengeBuilder",
    "PaymentVerifier",
    "Verification",
    "Outcome",
    "AccessGate",
    "Decision",
    "GateResult",
    "extract_credentials",
    "PaymentType",
    "ProtectedResource",
    # Errors
    "AccessError",
    "ErrorKind",
    "InvoiceCreationFailed",
    "UpstreamUnavailable",
    "STATUS_CODES",
    # Stats
    "GateStats",
    # App
    "create_app",
]
