"""Custom exceptions for the Yield Reallocator.

This module defines the exception hierarchy for the application.

Every exception carries a ``retryable`` flag. The executor uses it to tell
transient failures (oracle hiccups, confirmation timeouts) apart from the
ones an operator has to fix by hand (missing privileges, bad input).
"""


class ReallocatorError(Exception):
    """Base exception for all Yield Reallocator errors.

    All custom exceptions in the application should inherit from this class.
    """

    retryable = False


class ConfigurationError(ReallocatorError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing required configuration keys
        - Invalid configuration values
        - Configuration file not found
    """

    pass


class LedgerError(ReallocatorError):
    """Base exception for position ledger errors.

    Any LedgerError raised inside a ledger operation reverts the whole
    operation.
    """

    pass


class LedgerValidationError(LedgerError):
    """Raised when a ledger call is rejected before touching any state.

    Examples:
        - Position index out of range
        - Zero amount
        - Inactive position
        - Vault or router not whitelisted
    """

    pass


class LedgerPausedError(LedgerValidationError):
    """Raised when the ledger is globally paused."""

    pass


class SlippageError(LedgerError):
    """Raised when an output falls below the caller's slippage floor.

    Examples:
        - Deposit minted fewer shares than minSharesOut
        - Redeem returned fewer assets than minAssetsOut
    """

    pass


class AssetMismatchError(LedgerError):
    """Raised when the asset at hand is not the target vault's asset.

    Examples:
        - Zero swap legs but source and target underlying assets differ
        - Final swap leg outputs a token other than the target asset
    """

    pass


class SwapExecutionError(LedgerError):
    """Raised when a swap leg fails during reallocation."""

    pass


class TransferError(LedgerError):
    """Raised when a token transfer cannot be performed.

    Examples:
        - Insufficient balance
        - Insufficient allowance
    """

    pass


class AuthorizationError(ReallocatorError):
    """Raised when a privileged action is attempted without privilege.

    Never retried automatically; an operator has to intervene (for example
    whitelist a router by hand with the governance key).
    """

    pass


class GatewayError(ReallocatorError):
    """Base exception for external HTTP gateway errors."""

    retryable = True


class YieldOracleError(GatewayError):
    """Raised when the yield oracle cannot be reached or answers badly.

    Examples:
        - API rate limit exceeded
        - Network connection failed
        - Non-JSON response body
    """

    pass


class SwapQuoteError(GatewayError):
    """Raised when the swap gateway does not return a usable quote.

    Examples:
        - Non-2xx response
        - Response missing router or calldata
    """

    pass


class TransactionError(ReallocatorError):
    """Base exception for transaction submission and confirmation errors."""

    pass


class TransactionRevertedError(TransactionError):
    """Raised when a submitted transaction reverted."""

    pass


class TransactionTimeoutError(TransactionError):
    """Raised when a confirmation wait times out or is abandoned."""

    retryable = True


class StorageError(ReallocatorError):
    """Raised when record store operations fail.

    Examples:
        - Database connection failed
        - SQL query failed
        - Attempt to mutate an immutable record
    """

    pass
