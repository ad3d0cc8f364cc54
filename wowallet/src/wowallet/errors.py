"""
Exception hierarchy for the wallet engine.

Parse, validation, selection and signature errors are deterministic and never
retried. Only NetworkError is considered transient by the retry layer.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all wallet engine errors."""


# Parse errors: malformed input text/bytes, surfaced before any I/O


class ParseError(WalletError):
    pass


class MalformedDescriptor(ParseError):
    pass


class InvalidChecksum(ParseError):
    pass


class MalformedPSBT(ParseError):
    pass


# Validation errors: well-formed input that is inconsistent or unusable


class ValidationError(WalletError):
    pass


class NotARangeDescriptor(ValidationError):
    pass


class DescriptorMismatch(ValidationError):
    pass


class ForeignInput(ValidationError):
    """A PSBT input spends an output the wallet's descriptors do not derive."""


class WrongNetwork(ValidationError):
    pass


class InvalidDestination(ValidationError):
    pass


class InvalidAmount(ValidationError):
    pass


class NoRecipients(ValidationError):
    pass


class InconsistentPSBT(ValidationError):
    pass


class UnsupportedScript(ValidationError):
    pass


class NotFinalized(ValidationError):
    pass


class InsufficientFunds(WalletError):
    """Raised when no subset of the available UTXOs covers target plus fee."""

    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(f"Insufficient funds: need {needed}, have {available}")


class NetworkError(WalletError):
    """Transient chain source failure; the original exception is chained as __cause__."""


class BroadcastError(NetworkError):
    """Transaction submission failed.

    ``rejected`` is True when the node answered and refused the transaction,
    which no amount of retrying will change.
    """

    def __init__(self, message: str, rejected: bool = False):
        self.rejected = rejected
        super().__init__(message)


class SignatureError(WalletError):
    pass


class IncompleteSignatures(SignatureError):
    def __init__(self, input_index: int, have: int, need: int):
        self.input_index = input_index
        self.have = have
        self.need = need
        super().__init__(f"Input {input_index}: have {have} valid signature(s), need {need}")


class InvalidSignature(SignatureError):
    def __init__(self, input_index: int, pubkey: bytes, reason: str = "does not verify"):
        self.input_index = input_index
        self.pubkey = pubkey
        super().__init__(f"Input {input_index}: signature for {pubkey.hex()} {reason}")
