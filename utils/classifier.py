"""
Form classification.

Maps a raw form record onto the fixed category taxonomy
(mega, gigantamax, regional, gender, cosmetic, alternate) with ordered
substring heuristics. The rule order and token lists are load-bearing: names
such as "meowstic-female" or "hisuian-growlithe" classify differently if the
rules are reordered.
"""

from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Set

from utils.constants import CATEGORY_ALIASES, FORM_CATEGORIES, REGIONAL_HINTS


class FormClassification(NamedTuple):
    is_mega: bool = False
    is_gigantamax: bool = False
    is_regional: bool = False
    is_gender: bool = False
    is_cosmetic: bool = False
    is_alternate: bool = False

    def categories(self) -> List[str]:
        """Category names that are set, in taxonomy order."""
        return [name for name, flag in zip(FORM_CATEGORIES, self) if flag]

    def as_flags(self) -> Dict[str, bool]:
        return self._asdict()


def _text(value: Any) -> str:
    return value.lower() if isinstance(value, str) else ""


def _contains(haystacks, needle: str) -> bool:
    return any(needle in h for h in haystacks)


def classify(raw_form: Optional[Mapping[str, Any]]) -> FormClassification:
    """
    Classify a raw form record. Total: never raises, whatever the input.

    Rules, evaluated against lowercased `name` and `form_name`:

    1. mega: contains "mega", or `is_mega` is true.
    2. gigantamax: contains "gmax"/"gigantamax", or `is_gigantamax` is true.
    3. regional: contains a regional hint token.
    4. gender: name ends with "-m"/"-f", or contains "male"/"female".
    5. cosmetic: has a form_name, none of 1-4, and `is_battle_only` is
       explicitly False. A missing flag is treated as unknown, not False.
    6. alternate: `is_default` is not true and none of 1-5.

    Args:
        raw_form: Upstream `pokemon-form` payload or any mapping with
            `name`/`form_name`/flag keys.

    Returns:
        FormClassification with the flags set.
    """
    if not isinstance(raw_form, Mapping):
        raw_form = {}

    name = _text(raw_form.get("name"))
    form_name = _text(raw_form.get("form_name"))
    fields = (name, form_name)

    is_mega = _contains(fields, "mega") or raw_form.get("is_mega") is True
    is_gigantamax = (
        _contains(fields, "gmax")
        or _contains(fields, "gigantamax")
        or raw_form.get("is_gigantamax") is True
    )
    is_regional = any(_contains(fields, hint) for hint in REGIONAL_HINTS)
    is_gender = (
        name.endswith("-m")
        or name.endswith("-f")
        or _contains(fields, "male")  # also matches "female"
    )

    primary = is_mega or is_gigantamax or is_regional or is_gender
    is_cosmetic = (
        bool(form_name) and not primary and raw_form.get("is_battle_only") is False
    )
    is_alternate = raw_form.get("is_default") is not True and not (
        primary or is_cosmetic
    )

    return FormClassification(
        is_mega=is_mega,
        is_gigantamax=is_gigantamax,
        is_regional=is_regional,
        is_gender=is_gender,
        is_cosmetic=is_cosmetic,
        is_alternate=is_alternate,
    )


def normalize_category(value: str) -> Optional[str]:
    """
    Map a user-supplied category name onto the taxonomy.

    Returns:
        The canonical category, or None when the value is not recognised.
    """
    key = value.strip().lower()
    key = CATEGORY_ALIASES.get(key, key)
    return key if key in FORM_CATEGORIES else None


def normalize_categories(values) -> Set[str]:
    result = set()
    for value in values or []:
        category = normalize_category(value)
        if category:
            result.add(category)
    return result
