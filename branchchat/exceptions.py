"""
Exception types for branchchat.

Reply gateways raise :class:`ReplyGatewayError` for anything that prevents a
reply from coming back. :class:`GatewaySetupError` carries a checklist for
getting the on-device gateway running, so the CLI and library callers print
the same guidance.
"""

from __future__ import annotations

__all__ = [
    "BranchChatError",
    "GatewaySetupError",
    "ReplyGatewayError",
    "troubleshooting_message",
]

_SETUP_CHECKLIST = (
    "Troubleshooting checklist:",
    "1. The on-device gateway needs macOS 26+ on Apple Silicon (M-series).",
    "2. Install the SDK extra: pip install 'branchchat[apple]'",
    "3. Verify model availability:",
    '   python -c "import apple_fm_sdk as fm; print(fm.SystemLanguageModel().is_available())"',
    "4. Or use a webhook instead: branchchat ask --webhook URL TEXT",
)


class BranchChatError(Exception):
    """Base class for branchchat errors."""


class ReplyGatewayError(BranchChatError):
    """Raised when a reply gateway cannot produce assistant text."""


class GatewaySetupError(ReplyGatewayError, RuntimeError):
    """
    Raised when the Apple FM SDK or its model is missing or unavailable.

    ``context`` names the component that failed the check and ``reason``
    says why. Both are kept as attributes; the message is the full
    troubleshooting text.
    """

    def __init__(self, context: str, reason: str | None = None) -> None:
        self.context = context
        self.reason = reason
        super().__init__(troubleshooting_message(context, reason))


def troubleshooting_message(context: str, reason: str | None = None) -> str:
    """Setup failure header, optional reason, then the checklist."""
    label = context.strip() or "branchchat"
    header = [f"[{label}] Reply gateway setup check failed."]
    if reason:
        header.append(f"Reason: {reason}")
    return "\n".join([*header, "", *_SETUP_CHECKLIST])
