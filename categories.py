from dataclasses import dataclass

from models import TransactionType


@dataclass(frozen=True)
class CategoryStyle:
    icon: str
    color: str


DEFAULT_STYLE = CategoryStyle(icon="📌", color="#6b7280")

CATEGORY_STYLES: dict[str, CategoryStyle] = {
    "bills": CategoryStyle("💳", "#ef4444"),
    "food": CategoryStyle("🍔", "#f59e0b"),
    "transport": CategoryStyle("🚗", "#3b82f6"),
    "entertainment": CategoryStyle("🎬", "#8b5cf6"),
    "shopping": CategoryStyle("🛍️", "#ec4899"),
    "health": CategoryStyle("💊", "#10b981"),
    "salary": CategoryStyle("💰", "#22c55e"),
    "freelance": CategoryStyle("💼", "#6366f1"),
    "investment": CategoryStyle("📈", "#14b8a6"),
    "other": DEFAULT_STYLE,
}

CATEGORIES_BY_TYPE: dict[TransactionType, tuple[str, ...]] = {
    TransactionType.expense: (
        "bills",
        "food",
        "transport",
        "entertainment",
        "shopping",
        "health",
        "other",
    ),
    TransactionType.income: ("salary", "freelance", "investment", "other"),
}


def category_style(category: str) -> CategoryStyle:
    """Icon and color for a category, falling back to the generic style."""
    return CATEGORY_STYLES.get(category.strip().lower(), DEFAULT_STYLE)


def categories_for(type_: TransactionType) -> tuple[str, ...]:
    return CATEGORIES_BY_TYPE[TransactionType(type_)]


def is_known_category(category: str, type_: TransactionType) -> bool:
    return category.strip().lower() in categories_for(type_)
