# digistore/errors.py
class StorefrontError(Exception):
    pass


# ----------------------------
# rejected before any side effect
# ----------------------------
class ValidationError(StorefrontError):
    pass


class ProductNotFound(ValidationError):
    pass


class AmountMismatch(ValidationError):
    def __init__(self, declared: int, price: int):
        super().__init__(
            f"declared amount {declared} does not match price {price}"
        )
        self.declared = declared
        self.price = price


class OrderNotFound(StorefrontError):
    pass


# ----------------------------
# timeouts / 5xx from externals: no state change, safe to re-poll
# ----------------------------
class TransientExternalError(StorefrontError):
    pass


class GatewayError(TransientExternalError):
    pass


# ----------------------------
# provisioning: order goes to paid_failed, payment is not reversed
# ----------------------------
class ProvisioningError(StorefrontError):
    pass


class DuplicateUsername(ProvisioningError):
    def __init__(self, username: str):
        super().__init__(f"username {username} is already registered")
        self.username = username


class FileNotFound(StorefrontError):
    pass


# ----------------------------
# needs operator attention, never auto-repaired
# ----------------------------
class ConsistencyError(StorefrontError):
    pass


class FulfillmentRecordError(StorefrontError):
    pass
