"""
Error taxonomy for the swap engine.

Every failure is raised before any state is written, so a caller that catches
one of these can assume the pool and all balances are unchanged.
"""


class ValidationError(Exception):
    """Raised when validation fails."""
    pass


class ZeroAmount(ValidationError):
    pass


class UnknownAsset(ValidationError):
    """Asset is not one of the pool's two mints, or is not registered."""
    pass


class SlippageExceeded(ValidationError):
    pass


class ExcessiveSlippage(SlippageExceeded):
    """Deposit would need more than the caller's maximum of either asset."""
    pass


class Overflow(ValidationError):
    pass


class Underflow(ValidationError):
    pass


class InsufficientBalance(ValidationError):
    pass


class InsufficientDiscountTokenBalance(InsufficientBalance):
    pass


class NoPricePath(ValidationError):
    pass


class ZeroLiquidity(ValidationError):
    pass


class InsufficientInitialLiquidity(ZeroLiquidity):
    """Seed deposit does not clear the permanently locked minimum."""
    pass


class Unauthorized(ValidationError):
    pass


class InvalidAddress(ValidationError):
    pass


class InvalidFeeRate(ValidationError):
    pass


class AccountExists(ValidationError):
    pass


class AccountNotFound(ValidationError):
    pass


class OperationDisabled(ValidationError):
    pass


class ConcurrentUpdate(ValidationError):
    """Records deciding an operation's lock set kept changing while the locks were taken."""
    pass
