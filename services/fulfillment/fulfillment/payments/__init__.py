from .credentials import (
    PayPalCredentials,
    ProviderCredentialStore,
    StripeCredentials,
    is_encryption_configured,
)
from .paypal_adapter import PayPalAdapter
from .registry import AdapterRegistry, create_adapter
from .stripe_adapter import StripeAdapter
from .types import (
    CheckoutSession,
    LineItem,
    PaymentAdapter,
    PaymentAdapterError,
    PaymentProvider,
    PaymentResult,
    PaymentStatus,
    RefundResult,
)

__all__ = [
    "AdapterRegistry",
    "CheckoutSession",
    "LineItem",
    "PayPalAdapter",
    "PayPalCredentials",
    "PaymentAdapter",
    "PaymentAdapterError",
    "PaymentProvider",
    "PaymentResult",
    "PaymentStatus",
    "ProviderCredentialStore",
    "RefundResult",
    "StripeAdapter",
    "StripeCredentials",
    "create_adapter",
    "is_encryption_configured",
]
