"""
Name normalization shared by stored names and search input.

Both sides must go through the same function or matches silently break.
"""

import re
import unicodedata
from typing import Optional

# Letter variants folded to one form (Arabic alef/hamza seats, ya / alef maqsura)
_FOLD = str.maketrans({
    "أ": "ا",  # alef with hamza above
    "إ": "ا",  # alef with hamza below
    "آ": "ا",  # alef with madda
    "ٱ": "ا",  # alef wasla
    "ى": "ي",  # alef maqsura -> ya
    "ـ": None,      # tatweel
})

_SPACES = re.compile(r"\s+")


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    folded = value.translate(_FOLD)
    decomposed = unicodedata.normalize("NFKD", folded)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _SPACES.sub(" ", stripped).strip().casefold()


def normalize_tokens(tokens) -> list[str]:
    """Normalize query tokens, dropping the ones that end up empty."""
    out = []
    for token in tokens or []:
        norm = normalize_name(token)
        if norm:
            out.append(norm)
    return out
