"""
Flat model exports.

Models are organized into domain modules:
- auth.py: customers, cached wallet figures, bearer sessions
- catalog.py: products and variants
- orders.py: orders (with embedded delivery OTP) and line items
- wallet.py: coin ledger transactions and referral visits
- notifications.py: per-order in-app notifications
"""

from models.auth import (
    User,
    AuthSession,
    hash_token,
    generate_session_token,
    generate_referral_code,
)

from models.catalog import (
    Product,
    ProductVariant,
)

from models.orders import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
)

from models.wallet import (
    WalletTransaction,
    ReferralVisit,
    TransactionType,
)

from models.notifications import (
    Notification,
)
