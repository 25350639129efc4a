from tallybot.models.schemas import Category

DEFAULT_CATEGORY_NAME = "Other"

# Shared-group categories are free strings, not stored entities.
GROUP_CATEGORIES = ["food", "transport", "accommodation", "entertainment", "general"]

CATEGORY_EMOJI = {
    "food": "🍽️",
    "transport": "🚗",
    "accommodation": "🏨",
    "entertainment": "🎉",
    "general": "📌",
}


def default_category(categories: list[Category]) -> Category:
    """The owner's "Other" category, or an unsaved placeholder when they have none."""
    for category in categories:
        if category.deleted_at is None and category.name.lower() == DEFAULT_CATEGORY_NAME.lower():
            return category
    return Category(id="", name=DEFAULT_CATEGORY_NAME)


def match_category(hint: str | None, categories: list[Category]) -> Category:
    """Resolve a category hint: exact, then prefix, then substring, then default.

    The first tier with any match wins; within a tier the first category in
    the given order is returned.
    """
    active = [c for c in categories if c.deleted_at is None]
    if not hint:
        return default_category(active)

    needle = hint.strip().lower()
    if not needle:
        return default_category(active)

    tiers = (
        lambda name: name == needle,
        lambda name: name.startswith(needle),
        lambda name: needle in name,
    )
    for matches in tiers:
        for category in active:
            if matches(category.name.lower()):
                return category
    return default_category(active)


def category_emoji(name: str) -> str:
    return CATEGORY_EMOJI.get(name, "📌")
