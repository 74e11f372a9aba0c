"""Payment error taxonomy shared by the HTTP, webhook and realtime paths."""

from fastapi import HTTPException, status


class PaymentError(Exception):
    """Base class for payment errors carrying an HTTP status and machine code."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "PAYMENT_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_http(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={"code": self.code, "message": self.message}
        )


class ValidationError(PaymentError):
    """Bad amount, malformed request or a disallowed command."""
    code = "VALIDATION_ERROR"


class OwnershipError(PaymentError):
    """The caller does not own the resource or it is not payable."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class ObligationNotFoundError(PaymentError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "OBLIGATION_NOT_FOUND"


class AlreadyPaidError(PaymentError):
    code = "ALREADY_PAID"


class TransactionNotFoundError(PaymentError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "TRANSACTION_NOT_FOUND"


class ProviderError(PaymentError):
    """The payment provider refused or failed to create a charge."""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "PROVIDER_ERROR"


class WebhookSignatureError(PaymentError):
    code = "INVALID_SIGNATURE"


class DecryptionError(PaymentError):
    """Envelope could not be opened: wrong key, tampered ciphertext or tag mismatch."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "DECRYPTION_FAILED"


class IntegrityError(PaymentError):
    """Digest mismatch or a settlement event that does not match the stored record."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTEGRITY_FAILED"


class InsufficientFundsError(PaymentError):
    code = "INSUFFICIENT_FUNDS"


class StoreUnavailableError(PaymentError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "STORE_UNAVAILABLE"


class ConfigurationError(RuntimeError):
    """Missing or malformed process-wide configuration."""
