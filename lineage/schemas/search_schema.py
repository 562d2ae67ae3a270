from pydantic import BaseModel
from typing import Optional, Literal


MatchClass = Literal["exact_prefix", "subsequence", "any_order"]


class MatchResult(BaseModel):
    id: str
    name: str
    path: str
    generation: int

    # Joined ancestor names, nearest first
    name_chain: str
    father_name: Optional[str] = None
    grandfather_name: Optional[str] = None

    match_class: MatchClass
    match_score: float
    matched_tokens: int
    match_depth: int
