"""
Citation Evaluator — Post-generation check of inline citation references.

Scans the final answer for `[n]` markers and compares them with the
citation list that will be shown to the user.

Flags:
1. "missing_citations" — text references a number that has no citation entry
2. "unused_citations"  — a citation entry is never referenced inline (allowed;
                         it still appears in the references section)
"""

import re
from typing import Dict, List

from backend.models.schemas import Citation


CITATION_MARKER = re.compile(r"\[(\d+)\]")


def validate_citation_references(text: str, citations: List[Citation]) -> Dict:
    """
    Compare inline markers with the available citation numbers.

    Args:
        text: Final answer text
        citations: Citation list shown alongside the answer

    Returns:
        {
            "valid": bool,                 # True iff nothing is missing
            "missing_citations": [int],    # first-reference order
            "unused_citations": [int]      # citation-list order
        }
    """
    referenced = []
    for match in CITATION_MARKER.findall(text or ""):
        number = int(match)
        if number not in referenced:
            referenced.append(number)

    available = []
    for citation in citations:
        if citation.number not in available:
            available.append(citation.number)

    missing = [n for n in referenced if n not in available]
    unused = [n for n in available if n not in referenced]

    return {
        "valid": not missing,
        "missing_citations": missing,
        "unused_citations": unused,
    }


def evaluate_citations(text: str, citations: List[Citation]) -> List[str]:
    """Return evaluator flags for an answer (empty if no issues detected)."""
    report = validate_citation_references(text, citations)
    flags = []
    if report["missing_citations"]:
        flags.append("missing_citations")
    if report["unused_citations"]:
        flags.append("unused_citations")
    return flags


def get_warning_message(flags: List[str]) -> str:
    """
    Generate a user-facing warning based on evaluator flags.

    Only missing citations warrant a warning; unused ones are harmless.
    """
    if "missing_citations" not in flags:
        return ""
    return "⚠️ 回答中部分引用編號找不到對應來源，請以參考來源列表為準。"
