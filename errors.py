import enum


class ErrorCode(str, enum.Enum):
    # decode
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    UNKNOWN_MODE = "UNKNOWN_MODE"
    MISSING_FIELD = "MISSING_FIELD"
    # validation
    EXPIRED = "EXPIRED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"
    # stock
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVENTORY_UNAVAILABLE = "INVENTORY_UNAVAILABLE"
    # issuance / remote
    INVALID_VOUCHER = "INVALID_VOUCHER"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REMOTE_ERROR = "REMOTE_ERROR"


DECODE_ERRORS = frozenset({
    ErrorCode.MALFORMED_PAYLOAD,
    ErrorCode.UNKNOWN_MODE,
    ErrorCode.MISSING_FIELD,
})

# What the attendant/beneficiary sees for each code
USER_MESSAGES = {
    ErrorCode.MALFORMED_PAYLOAD: "Invalid QR code",
    ErrorCode.UNKNOWN_MODE: "Invalid QR code",
    ErrorCode.MISSING_FIELD: "Invalid QR code",
    ErrorCode.EXPIRED: "QR code has expired. Please request a new voucher.",
    ErrorCode.INVALID_AMOUNT: "Please enter a valid amount",
    ErrorCode.ALREADY_REDEEMED: "This voucher has already been used",
    ErrorCode.INSUFFICIENT_STOCK: "Insufficient stock available",
    ErrorCode.INVENTORY_UNAVAILABLE: "Station inventory is not available",
    ErrorCode.INVALID_VOUCHER: "Voucher could not be issued",
    ErrorCode.PAYMENT_FAILED: "Payment failed. Please try again.",
    ErrorCode.REMOTE_ERROR: "Network error. Please check your connection.",
}


class FuelError(Exception):
    def __init__(self, code: ErrorCode, message: str = ""):
        super().__init__(message or USER_MESSAGES.get(code, code.value))
        self.code = code
        self.message = message or USER_MESSAGES.get(code, code.value)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.code, self.message)


class DecodeError(FuelError):
    pass


class IssueError(FuelError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_VOUCHER, message)


class PaymentFailedError(FuelError):
    def __init__(self, message: str = ""):
        super().__init__(ErrorCode.PAYMENT_FAILED, message)


class InsufficientStockError(FuelError):
    def __init__(self, requested: float, available: float):
        super().__init__(
            ErrorCode.INSUFFICIENT_STOCK,
            f"Requested {requested:.2f} L but only {available:.2f} L in stock",
        )
        self.requested = requested
        self.available = available


class RemoteError(FuelError):
    """A backend call failed (network, timeout, or an unsuccessful envelope)."""

    def __init__(self, message: str = ""):
        super().__init__(ErrorCode.REMOTE_ERROR, message)
