class FeeSellerError(Exception):
    """
    Base class for all fee seller errors
    """
    kind = "error"

class ConfigError(FeeSellerError):
    """
    Invalid or missing configuration, fatal before the loop starts
    """
    kind = "config"

class ChainError(FeeSellerError):
    """
    RPC, broadcast or on-chain execution failure
    """
    kind = "chain"

class InsufficientOutputError(FeeSellerError):
    """
    Sale proceeds would fall below the minimum acceptable output
    """
    kind = "insufficient_output"

    def __init__(self, message: str, minimum: int = 0, actual: int = 0):
        super().__init__(message)
        self.minimum = minimum
        self.actual = actual

class OperationTimeoutError(FeeSellerError, TimeoutError):
    """
    A network call or transaction confirmation did not finish in time
    """
    kind = "timeout"

class NotificationError(FeeSellerError):
    """
    Webhook delivery failed
    """
    kind = "notification"
