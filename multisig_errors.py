"""
Exception hierarchy for the multisig wallet engine.

Every error derives from ``MultisigError`` and from the builtin that
generic callers would expect (``ValueError`` for bad input,
``PermissionError`` for signer policy, ``RuntimeError`` for invariant
violations in the encoding layer).

    ConfigurationError   raised at construction / key derivation
    AuthorizationError   raised at signing time
    FundsError           raised at draft assembly
    VerificationError    raised at finalize time
    FatalEncodingError   script / address / transaction encoding failed
"""

from __future__ import annotations


class MultisigError(Exception):
    """Base class for all wallet engine errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(MultisigError, ValueError):
    """Bad threshold, key set, network, path or backup phrase."""


class InvalidThreshold(ConfigurationError):
    pass


class InvalidKeySet(ConfigurationError):
    pass


class InvalidBackupPhrase(ConfigurationError):
    pass


class InvalidIndex(ConfigurationError):
    pass


class InvalidPath(ConfigurationError):
    pass


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

class AuthorizationError(MultisigError, PermissionError):
    """Signer is not allowed to contribute (now or at all)."""


class UnauthorizedSigner(AuthorizationError):
    pass


class DuplicateSignature(AuthorizationError):
    pass


class DraftFinalized(AuthorizationError):
    """The draft already produced its final transaction."""


# ---------------------------------------------------------------------------
# Funds
# ---------------------------------------------------------------------------

class FundsError(MultisigError, ValueError):
    """Inputs, outputs or fee cannot form a valid spend."""


class EmptyInputSet(FundsError):
    pass


class EmptyOutputSet(FundsError):
    pass


class NegativeFee(FundsError):
    pass


class InsufficientFunds(FundsError):
    pass


class InvalidDestination(FundsError):
    pass


class NonPositiveOutputAmount(FundsError):
    pass


class ExcessiveAmount(FundsError):
    """Output value or fee above the 21M BTC money supply."""


class InvalidSpendableOutput(FundsError):
    pass


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class VerificationError(MultisigError):
    """Threshold or signer uniqueness not met."""


class VerificationFailed(VerificationError):
    pass


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

class FatalEncodingError(MultisigError, RuntimeError):
    """Underlying encoding rejected well-formed data. Never retried."""


class AddressDerivationFailure(FatalEncodingError):
    pass


class FinalizationFailure(FatalEncodingError):
    pass
