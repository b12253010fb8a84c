"""
Domain constants shared by the ledger, the lot matcher and the API layer.
"""

from decimal import Decimal

# ---------------------------------------------------------------------------
# Transaction types
# ---------------------------------------------------------------------------
TX_BUY = "buy"
TX_SELL = "sell"
TX_TRANSFER_IN = "transfer-in"
TX_TRANSFER_OUT = "transfer-out"
TX_SELF_TRANSFER = "self-transfer"
TX_EXPENSE = "expense"
TX_GIFT_RECEIVED = "gift-received"
TX_GIFT_SENT = "gift-sent"
TX_INCOME = "income"
TX_MINING = "mining"
TX_STAKING = "staking"
TX_AIRDROP = "airdrop"

TRANSACTION_TYPES = (
    TX_BUY,
    TX_SELL,
    TX_TRANSFER_IN,
    TX_TRANSFER_OUT,
    TX_SELF_TRANSFER,
    TX_EXPENSE,
    TX_GIFT_RECEIVED,
    TX_GIFT_SENT,
    TX_INCOME,
    TX_MINING,
    TX_STAKING,
    TX_AIRDROP,
)

# Types that open a lot
ACQUISITION_TYPES = frozenset({
    TX_BUY,
    TX_TRANSFER_IN,
    TX_GIFT_RECEIVED,
    TX_INCOME,
    TX_MINING,
    TX_STAKING,
    TX_AIRDROP,
})

# Types that consume lots
DISPOSAL_TYPES = frozenset({
    TX_SELL,
    TX_TRANSFER_OUT,
    TX_EXPENSE,
    TX_GIFT_SENT,
})

# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------
CATEGORY_UNCATEGORIZED = "uncategorized"
CATEGORY_PERSONAL = "personal"
CATEGORY_BUSINESS_EXPENSE = "business-expense"
CATEGORY_SELF_TRANSFER = "self-transfer"
CATEGORY_GIFT = "gift"

TRANSACTION_CATEGORIES = (
    CATEGORY_UNCATEGORIZED,
    CATEGORY_PERSONAL,
    CATEGORY_BUSINESS_EXPENSE,
    CATEGORY_SELF_TRANSFER,
    CATEGORY_GIFT,
)

# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------
SOURCE_KINDS = ("exchange", "wallet", "manual")
SUPPORTED_EXCHANGES = ("binance", "kraken")

# ---------------------------------------------------------------------------
# Filing statuses (keys of the bracket tables)
# ---------------------------------------------------------------------------
FILING_SINGLE = "single"
FILING_MARRIED_JOINT = "married-joint"
FILING_MARRIED_SEPARATE = "married-separate"
FILING_HEAD_OF_HOUSEHOLD = "head-of-household"

FILING_STATUSES = (
    FILING_SINGLE,
    FILING_MARRIED_JOINT,
    FILING_MARRIED_SEPARATE,
    FILING_HEAD_OF_HOUSEHOLD,
)

# ---------------------------------------------------------------------------
# Assets valued 1:1 in USD. They never open lots.
# ---------------------------------------------------------------------------
USD_LIKE_ASSETS = frozenset({"USD", "USDT", "USDC", "BUSD", "DAI", "TUSD", "USDP"})

# Other fiat; never opens lots either, but has no USD value of its own
FIAT_ASSETS = frozenset({"EUR", "GBP", "CAD", "AUD", "JPY", "CHF"})


def is_cash_asset(asset: str) -> bool:
    return asset in USD_LIKE_ASSETS or asset in FIAT_ASSETS

# ---------------------------------------------------------------------------
# Holding period
# ---------------------------------------------------------------------------
LONG_TERM_THRESHOLD_DAYS = 365

# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------
USD_QUANT = Decimal("0.01")

# ---------------------------------------------------------------------------
# Transfer matching
# ---------------------------------------------------------------------------
TRANSFER_TIME_WINDOW_SECONDS = 60 * 60
TRANSFER_AMOUNT_TOLERANCE = Decimal("0.0001")

# ---------------------------------------------------------------------------
# Outbound HTTP retry policy
# ---------------------------------------------------------------------------
HTTP_MAX_ATTEMPTS = 3
HTTP_BACKOFF_BASE_SECONDS = 1.0
HTTP_BACKOFF_MAX_SECONDS = 30.0
HTTP_TIMEOUT_SECONDS = 10.0
