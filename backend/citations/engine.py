"""
Citation Engine — Turns upstream grounding payloads into numbered citations.

Supported payload shapes (snake_case or camelCase keys):
  - grounding_metadata: {web_search_queries, grounding_chunks, grounding_supports}
  - citations: ["https://...", ...] plus optional search_results / web_search_queries
  - Groq compound: message.executed_tools[].search_results.results[]

Inline markers look like `[k](uri)` and are spliced at each support's
end_index, processing supports from the end of the text backwards so that
earlier offsets stay valid.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from backend.config import MAX_CITATIONS, MAX_UNREFERENCED_SOURCES
from backend.models.schemas import (
    Citation,
    GroundingChunk,
    GroundingMetadata,
    GroundingSegment,
    GroundingSummary,
    GroundingSupport,
    SegmentCitation,
)

logger = logging.getLogger(__name__)


NO_CITATIONS_WARNING = "無法從搜索結果中提取引用資訊"
EXTRACTION_FAILED_WARNING = "引用資訊提取失敗"

MARKER_PATTERN = re.compile(r"\[(\d+)\]")

# Friendly names for sources that show up often
DOMAIN_TITLES = {
    "zh.wikipedia.org": "維基百科 (中文)",
    "wikipedia.org": "維基百科",
    "baike.baidu.com": "百度百科",
    "baidu.com": "百度",
    "zhihu.com": "知乎",
    "guoxue.com": "國學網",
    "literature.org.cn": "中國文學網",
    "cnki.net": "中國知網",
    "douban.com": "豆瓣",
    "ctext.org": "中國哲學書電子化計劃",
    "academia.edu": "Academia.edu",
    "jstor.org": "JSTOR",
}

FALLBACK_SOURCES = [
    {
        "title": "紅樓夢研究 - 維基百科",
        "url": "https://zh.wikipedia.org/wiki/紅樓夢",
        "domain": "wikipedia.org",
    },
    {
        "title": "曹雪芹與紅樓夢研究",
        "url": "https://www.guoxue.com/hongloumeng/",
        "domain": "guoxue.com",
    },
]


class CitationResult(BaseModel):
    processed_text: str
    citations: List[Citation] = Field(default_factory=list)
    segment_citations: List[SegmentCitation] = Field(default_factory=list)
    summary: GroundingSummary = Field(default_factory=GroundingSummary)


# --- URL helpers ---

def extract_domain(url: str) -> str:
    """Host name without scheme or leading www."""
    if not url:
        return "unknown"
    parsed = urlparse(url.strip() if "://" in url else f"https://{url.strip()}")
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host or "unknown"


def extract_title_from_url(url: str) -> str:
    """Friendly title for a bare URL: known site name or the first host label."""
    domain = extract_domain(url)
    if domain == "unknown":
        return "網路來源"
    if domain in DOMAIN_TITLES:
        return DOMAIN_TITLES[domain]
    for known, title in DOMAIN_TITLES.items():
        if domain.endswith("." + known) or known in domain:
            return title
    return domain.split(".")[0]


# --- Payload normalization ---

def _get(data: Any, *keys: str) -> Any:
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _parse_supports(raw_supports: Iterable[Any]) -> List[GroundingSupport]:
    supports = []
    for raw in raw_supports or []:
        if not isinstance(raw, dict):
            continue
        segment = _get(raw, "segment") or {}
        indices = _get(raw, "grounding_chunk_indices", "groundingChunkIndices") or []
        supports.append(GroundingSupport(
            segment=GroundingSegment(
                start_index=_get(segment, "start_index", "startIndex"),
                end_index=_get(segment, "end_index", "endIndex"),
                text=_get(segment, "text") or "",
            ),
            grounding_chunk_indices=[i for i in indices if isinstance(i, int) and not isinstance(i, bool)],
        ))
    return supports


def _parse_chunks(raw_chunks: Iterable[Any]) -> List[GroundingChunk]:
    chunks = []
    for raw in raw_chunks or []:
        web = _get(raw, "web") or raw
        chunks.append(GroundingChunk(
            uri=(_get(web, "uri", "url") or "").strip(),
            title=_get(web, "title") or "",
            snippet=_get(web, "snippet", "content"),
        ))
    return chunks


def _search_result_chunks(results: Iterable[Any]) -> List[GroundingChunk]:
    chunks = []
    for result in results or []:
        if isinstance(result, str):
            chunks.append(GroundingChunk(uri=result.strip()))
        elif isinstance(result, dict):
            chunks.append(GroundingChunk(
                uri=(_get(result, "url", "uri") or "").strip(),
                title=_get(result, "title") or "",
                snippet=_get(result, "snippet", "content"),
            ))
    return chunks


def _executed_tool_chunks(payload: Dict[str, Any]) -> List[GroundingChunk]:
    chunks = []
    for choice in _get(payload, "choices") or []:
        holder = _get(choice, "message") or _get(choice, "delta") or {}
        for tool in _get(holder, "executed_tools") or []:
            search_results = _get(tool, "search_results")
            if isinstance(search_results, dict):
                search_results = _get(search_results, "results")
            chunks.extend(_search_result_chunks(search_results))
    return chunks


def parse_grounding_metadata(payload: Optional[Dict[str, Any]]) -> GroundingMetadata:
    """
    Normalize any supported upstream payload into GroundingMetadata.

    Unknown or malformed parts are ignored; never raises on shape problems.
    """
    if not isinstance(payload, dict):
        return GroundingMetadata()

    search_queries = list(_get(payload, "web_search_queries", "search_queries", "webSearchQueries") or [])
    chunks: List[GroundingChunk] = []
    supports: List[GroundingSupport] = []

    grounding = _get(payload, "grounding_metadata", "groundingMetadata")
    if isinstance(grounding, dict):
        search_queries.extend(_get(grounding, "web_search_queries", "webSearchQueries") or [])
        chunks.extend(_parse_chunks(_get(grounding, "grounding_chunks", "groundingChunks")))
        supports.extend(_parse_supports(_get(grounding, "grounding_supports", "groundingSupports")))

    # Flat source lists carry no supports, so order them after the indexed chunks
    seen = {c.uri for c in chunks}
    for chunk in (
        _search_result_chunks(_get(payload, "citations"))
        + _search_result_chunks(_get(payload, "search_results"))
        + _executed_tool_chunks(payload)
    ):
        if chunk.uri and chunk.uri not in seen:
            seen.add(chunk.uri)
            chunks.append(chunk)

    return GroundingMetadata(
        search_queries=list(dict.fromkeys(q for q in search_queries if q)),
        chunks=chunks,
        supports=supports,
    )


def merge_grounding(current: GroundingMetadata, update: GroundingMetadata) -> GroundingMetadata:
    """Combine stream snapshots: queries accumulate, a non-empty source set replaces the old one."""
    if update.is_empty():
        return current
    queries = list(dict.fromkeys(current.search_queries + update.search_queries))
    if update.chunks:
        return GroundingMetadata(search_queries=queries, chunks=update.chunks, supports=update.supports)
    return GroundingMetadata(search_queries=queries, chunks=current.chunks, supports=current.supports)


# --- Citation building ---

def _citation_for(number: int, chunk: GroundingChunk) -> Citation:
    return Citation(
        number=number,
        title=chunk.title or extract_title_from_url(chunk.uri),
        url=chunk.uri,
        type="web_citation",
        snippet=chunk.snippet,
        domain=extract_domain(chunk.uri),
    )


def build_source_citations(text: str, chunks: List[GroundingChunk]) -> List[Citation]:
    """
    Citations for sources that came without segment supports.

    A source is kept if the text references it as [n] or it is among the
    first MAX_UNREFERENCED_SOURCES; the list is capped at MAX_CITATIONS.
    """
    referenced = {int(n) for n in MARKER_PATTERN.findall(text or "")}
    citations = []
    for index, chunk in enumerate(chunks):
        number = index + 1
        if not chunk.uri:
            continue
        if number in referenced or index < MAX_UNREFERENCED_SOURCES:
            citations.append(_citation_for(number, chunk))
    return citations[:MAX_CITATIONS]


def fallback_citations() -> List[Citation]:
    return [
        Citation(number=i + 1, title=s["title"], url=s["url"], type="default", domain=s["domain"])
        for i, s in enumerate(FALLBACK_SOURCES)
    ]


def ensure_citations(citations: List[Citation]) -> List[Citation]:
    """Never hand back an empty citation list."""
    return citations if citations else fallback_citations()


def _end_of(support: GroundingSupport, text_length: int) -> int:
    end = support.segment.end_index
    if end is None:
        return text_length
    return max(0, min(end, text_length))


def _splice_citations(text: str, grounding: GroundingMetadata, inline: bool) -> CitationResult:
    chunks = grounding.chunks
    text_length = len(text)

    # Number sources by first reference in text order
    numbers: Dict[str, int] = {}
    by_position = sorted(grounding.supports, key=lambda s: _end_of(s, text_length))
    for support in by_position:
        for index in support.grounding_chunk_indices:
            if 0 <= index < len(chunks) and chunks[index].uri and chunks[index].uri not in numbers:
                numbers[chunks[index].uri] = len(numbers) + 1

    # Resolve every support first, then splice from the end backwards
    insertions = []
    for support in sorted(grounding.supports, key=lambda s: _end_of(s, text_length), reverse=True):
        end_index = _end_of(support, text_length)
        links, urls, titles, cited = [], [], [], []
        for index in support.grounding_chunk_indices:
            if not 0 <= index < len(chunks):
                continue
            chunk = chunks[index]
            if not chunk.uri:
                continue
            number = numbers[chunk.uri]
            links.append(f"[{number}]({chunk.uri})")
            urls.append(chunk.uri)
            titles.append(chunk.title or f"來源 {index + 1}")
            cited.append(number)

        if not links:
            continue

        marker = " " + ", ".join(links)
        insertions.append((end_index, marker, SegmentCitation(
            text_segment=support.segment.text,
            start_index=support.segment.start_index or 0,
            end_index=end_index,
            source_urls=urls,
            source_titles=titles,
            citation_numbers=cited,
        )))

    processed = text
    segment_citations = []
    for end_index, marker, segment_citation in insertions:
        # Text that already went through a splice pass keeps its markers
        already_present = marker in text
        if inline and not already_present:
            processed = processed[:end_index] + marker + processed[end_index:]
        segment_citations.append(segment_citation)

    segment_citations.sort(key=lambda s: (s.start_index, s.end_index))

    if grounding.supports:
        chunk_by_uri = {c.uri: c for c in chunks if c.uri}
        citations = [_citation_for(n, chunk_by_uri[uri]) for uri, n in numbers.items()]
        citation_count = len(segment_citations)
    else:
        citations = build_source_citations(text, chunks)
        citation_count = len(citations)

    return CitationResult(
        processed_text=processed,
        citations=citations,
        segment_citations=segment_citations,
        summary=_summarize(grounding, citations, citation_count),
    )


def _summarize(grounding: GroundingMetadata, citations: List[Citation], citation_count: int) -> GroundingSummary:
    return GroundingSummary(
        search_queries=grounding.search_queries,
        total_search_results=len(grounding.chunks),
        citation_count=citation_count,
        grounding_success=citation_count > 0,
        warnings=[] if citation_count > 0 else [NO_CITATIONS_WARNING],
        confidence_score=min(len(grounding.chunks) / 5, 1.0),
        web_sources=[c.url for c in citations if c.type == "web_citation"],
    )


def extract_and_format_citations(
    text: str,
    grounding: Optional[GroundingMetadata] = None,
    inline: bool = True,
) -> CitationResult:
    """
    Splice citation markers into text and build the citation list.

    Args:
        text: Raw answer text the support offsets refer to
        grounding: Normalized grounding metadata (None means no grounding)
        inline: When False, citations are built but no markers are inserted

    Returns:
        CitationResult. On any internal failure the original text comes back
        untouched with no citations and a warning.
    """
    grounding = grounding or GroundingMetadata()
    try:
        return _splice_citations(text or "", grounding, inline)
    except Exception as e:
        logger.error(f"Citation extraction failed: {e}")
        return CitationResult(
            processed_text=text or "",
            summary=GroundingSummary(
                search_queries=list(grounding.search_queries),
                total_search_results=len(grounding.chunks),
                warnings=[EXTRACTION_FAILED_WARNING],
            ),
        )


# --- Citation list utilities ---

def deduplicate_citations(citations: List[Citation]) -> List[Citation]:
    """Drop repeated sources (URL compared case-insensitively), keeping the first."""
    seen = set()
    unique = []
    for citation in citations:
        key = citation.url.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(citation)
    return unique


def group_citations_by_type(citations: List[Citation]) -> Dict[str, List[Citation]]:
    groups: Dict[str, List[Citation]] = {"academic": [], "news": [], "web_citation": [], "default": []}
    for citation in citations:
        groups.setdefault(citation.type, []).append(citation)
    return groups


def create_citation_summary(citations: List[Citation]) -> str:
    """One-line description such as '1 個學術來源、3 個網頁來源'."""
    if not citations:
        return "無引用來源"

    groups = group_citations_by_type(citations)
    parts = []
    if groups["academic"]:
        parts.append(f"{len(groups['academic'])} 個學術來源")
    if groups["news"]:
        parts.append(f"{len(groups['news'])} 個新聞來源")
    web_count = len(groups["web_citation"]) + len(groups["default"])
    if web_count:
        parts.append(f"{web_count} 個網頁來源")

    return "、".join(parts) if parts else f"共 {len(citations)} 個引用來源"


def generate_references_section(
    citations: List[Citation],
    title: str = "## 參考來源",
    include_snippets: bool = True,
) -> str:
    """Markdown references block, empty when there is nothing to list."""
    if not citations:
        return ""

    lines = [title, ""]
    for citation in citations:
        lines.append(f"[{citation.number}] **[{citation.title}]({citation.url})**")
        if include_snippets and citation.snippet:
            lines.append(f"   > {citation.snippet}")
        details = [d for d in (citation.domain, citation.publish_date) if d]
        if details:
            lines.append(f"   *{' · '.join(details)}*")
        lines.append("")

    return "\n".join(lines)
