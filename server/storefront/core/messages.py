"""Customer-facing messages for checkout and payment failures."""

from __future__ import annotations

MESSAGES: dict[str, dict[str, str]] = {
    "validation_error": {
        "he": "חסרים פרטים נדרשים",
        "en": "Required details are missing",
    },
    "invalid_amount": {
        "he": "סכום לא תקין",
        "en": "Invalid amount",
    },
    "store_not_found": {
        "he": "החנות לא נמצאה",
        "en": "Store not found",
    },
    "provider_not_configured": {
        "he": "לא הוגדר ספק תשלום לחנות",
        "en": "No payment provider is configured for this store",
    },
    "insufficient_inventory": {
        "he": "חלק מהמוצרים בעגלה אינם זמינים במלאי",
        "en": "Some items in your cart are no longer available",
    },
    "coupon_invalid": {
        "he": "קוד הקופון אינו תקף יותר",
        "en": "This coupon is no longer valid",
    },
    "coupon_minimum_not_met": {
        "he": "סכום ההזמנה נמוך מהמינימום הנדרש לקופון",
        "en": "The order total is below the coupon minimum",
    },
    "payment_initiation_failed": {
        "he": "שגיאה ביצירת התשלום, נסו שוב",
        "en": "Could not start the payment, please try again",
    },
    "duplicate_order": {
        "he": "ההזמנה כבר קיימת, נסו לרענן את הדף",
        "en": "This order already exists, please refresh the page",
    },
    "invalid_reference": {
        "he": "אחד הפריטים בהזמנה אינו קיים יותר",
        "en": "One of the items in your order no longer exists",
    },
    "timeout": {
        "he": "הפעולה ארכה זמן רב מדי, נסו שוב",
        "en": "The operation timed out, please try again",
    },
    "gateway_unavailable": {
        "he": "ספק התשלום אינו זמין כרגע",
        "en": "The payment provider is currently unavailable",
    },
    "checkout_failed": {
        "he": "אירעה שגיאה בתהליך התשלום",
        "en": "Something went wrong during checkout",
    },
}

FALLBACK_LOCALE = "en"


def get_message(code: str, locale: str | None = None) -> str:
    entry = MESSAGES.get(code) or MESSAGES["checkout_failed"]
    if locale and locale in entry:
        return entry[locale]
    return entry[FALLBACK_LOCALE]
