import re

_PARENS_RE = re.compile(r"\(.*?\)")
_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")

# Words that describe preparation or size rather than what to buy
DESCRIPTORS = (
    "fresh", "freshly", "chopped", "minced", "diced", "sliced", "grated", "shredded",
    "optional", "to taste", "for garnish", "for serving",
    "dry", "dried", "ground", "whole", "boneless", "skinless",
    "fine", "finely", "coarse", "coarsely", "granulated",
    "large", "medium", "small",
    "organic", "raw", "unsalted", "salted", "cooked", "uncooked",
)
_DESCRIPTOR_RE = re.compile(r"\b(?:" + "|".join(re.escape(d) for d in DESCRIPTORS) + r")\b")

IRREGULAR_PLURALS = {
    "tomatoes": "tomato",
    "potatoes": "potato",
    "leaves": "leaf",
    "berries": "berry",
    "chilies": "chili",
    "chillies": "chili",
}


def _singular(word: str) -> str:
    if word in IRREGULAR_PLURALS:
        return IRREGULAR_PLURALS[word]
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def normalize_ingredient_key(name: str) -> str:
    """
    Key used to merge shopping list lines and match them against pantry rows.

    "Fresh Tomatoes (ripe)" and "tomato, diced" both become "tomato".
    """
    if not name:
        return ""

    s = _PARENS_RE.sub("", name.lower())
    # Replace with space so "all-purpose" stays two words
    s = _PUNCT_RE.sub(" ", s)
    s = _DESCRIPTOR_RE.sub(" ", s)
    words = _SPACE_RE.sub(" ", s).strip().split()
    return " ".join(_singular(w) for w in words)
