"""Tests for grounding normalization and inline citation splicing."""
from backend.citations import engine
from backend.citations.engine import (
    EXTRACTION_FAILED_WARNING,
    NO_CITATIONS_WARNING,
    build_source_citations,
    create_citation_summary,
    deduplicate_citations,
    ensure_citations,
    extract_and_format_citations,
    extract_domain,
    extract_title_from_url,
    generate_references_section,
    merge_grounding,
    parse_grounding_metadata,
)
from backend.models.schemas import (
    Citation,
    GroundingChunk,
    GroundingMetadata,
    GroundingSegment,
    GroundingSupport,
)


ANSWER = "黛玉敏感多疑。寶釵端莊穩重。"
URI_A = "https://zh.wikipedia.org/wiki/林黛玉"
URI_B = "https://www.zhihu.com/question/1"


def _support(start, end, indices, text=""):
    return GroundingSupport(
        segment=GroundingSegment(start_index=start, end_index=end, text=text),
        grounding_chunk_indices=indices,
    )


def _grounding():
    return GroundingMetadata(
        search_queries=["林黛玉 性格"],
        chunks=[GroundingChunk(uri=URI_A, title="林黛玉"), GroundingChunk(uri=URI_B, title="知乎討論")],
        supports=[
            _support(0, 7, [0], "黛玉敏感多疑。"),
            _support(7, 14, [1, 0], "寶釵端莊穩重。"),
        ],
    )


# ── URL helpers ─────────────────────────────────────────────────

class TestUrlHelpers:
    def test_domain_strips_www(self):
        assert extract_domain(URI_B) == "zhihu.com"

    def test_domain_without_scheme(self):
        assert extract_domain("www.douban.com/book") == "douban.com"

    def test_empty_domain(self):
        assert extract_domain("") == "unknown"

    def test_known_titles(self):
        assert extract_title_from_url(URI_A) == "維基百科 (中文)"
        assert extract_title_from_url(URI_B) == "知乎"

    def test_unknown_site_uses_first_label(self):
        assert extract_title_from_url("https://redchamber.example.com/x") == "redchamber"

    def test_missing_url(self):
        assert extract_title_from_url("") == "網路來源"


# ── Payload normalization ───────────────────────────────────────

class TestParseGrounding:
    def test_camel_case_grounding_metadata(self):
        payload = {"groundingMetadata": {
            "webSearchQueries": ["林黛玉 性格"],
            "groundingChunks": [{"web": {"uri": URI_A, "title": "林黛玉"}}],
            "groundingSupports": [
                {"segment": {"startIndex": 0, "endIndex": 7, "text": "黛玉敏感多疑。"}, "groundingChunkIndices": [0]},
            ],
        }}
        grounding = parse_grounding_metadata(payload)
        assert grounding.search_queries == ["林黛玉 性格"]
        assert grounding.chunks[0].uri == URI_A
        assert grounding.supports[0].segment.end_index == 7
        assert grounding.supports[0].grounding_chunk_indices == [0]

    def test_flat_citations_are_deduplicated(self):
        grounding = parse_grounding_metadata({"citations": [URI_A, URI_A, URI_B]})
        assert [c.uri for c in grounding.chunks] == [URI_A, URI_B]
        assert grounding.supports == []

    def test_executed_tool_search_results(self):
        payload = {"choices": [{"message": {
            "content": "答案",
            "executed_tools": [{"search_results": {"results": [
                {"url": URI_A, "title": "林黛玉", "content": "林黛玉是金陵十二釵之首"},
                {"url": URI_B, "title": "知乎討論"},
            ]}}],
        }}]}
        grounding = parse_grounding_metadata(payload)
        assert [c.uri for c in grounding.chunks] == [URI_A, URI_B]
        assert grounding.chunks[0].snippet == "林黛玉是金陵十二釵之首"

    def test_malformed_payloads(self):
        assert parse_grounding_metadata(None).is_empty()
        assert parse_grounding_metadata({"choices": "oops", "grounding_metadata": []}).is_empty()

    def test_merge_keeps_sources_when_update_has_none(self):
        current = _grounding()
        merged = merge_grounding(current, GroundingMetadata(search_queries=["賈寶玉"]))
        assert merged.search_queries == ["林黛玉 性格", "賈寶玉"]
        assert merged.chunks == current.chunks

    def test_merge_ignores_empty_update(self):
        current = _grounding()
        assert merge_grounding(current, GroundingMetadata()) is current


# ── Splicing ────────────────────────────────────────────────────

class TestSplicing:
    def test_markers_inserted_at_segment_ends(self):
        result = extract_and_format_citations(ANSWER, _grounding())
        assert result.processed_text == (
            f"黛玉敏感多疑。 [1]({URI_A})寶釵端莊穩重。 [2]({URI_B}), [1]({URI_A})"
        )

    def test_length_grows_by_marker_lengths_only(self):
        result = extract_and_format_citations(ANSWER, _grounding())
        markers = [f" [1]({URI_A})", f" [2]({URI_B}), [1]({URI_A})"]
        assert len(result.processed_text) == len(ANSWER) + sum(len(m) for m in markers)

    def test_adjacent_segments_keep_offsets(self):
        grounding = GroundingMetadata(
            chunks=[GroundingChunk(uri=URI_A), GroundingChunk(uri=URI_B)],
            supports=[_support(0, 2, [0]), _support(2, 4, [1]), _support(0, 4, [0])],
        )
        result = extract_and_format_citations("黛玉寶釵", grounding)
        assert result.processed_text == f"黛玉 [1]({URI_A})寶釵 [1]({URI_A}) [2]({URI_B})"

    def test_citations_numbered_by_first_reference(self):
        result = extract_and_format_citations(ANSWER, _grounding())
        assert [(c.number, c.url) for c in result.citations] == [(1, URI_A), (2, URI_B)]
        assert result.citations[1].domain == "zhihu.com"

    def test_segment_citations_keep_original_offsets(self):
        result = extract_and_format_citations(ANSWER, _grounding())
        first, second = result.segment_citations
        assert (first.start_index, first.end_index, first.citation_numbers) == (0, 7, [1])
        assert (second.start_index, second.end_index, second.citation_numbers) == (7, 14, [2, 1])
        assert second.source_urls == [URI_B, URI_A]

    def test_summary(self):
        summary = extract_and_format_citations(ANSWER, _grounding()).summary
        assert summary.total_search_results == 2
        assert summary.citation_count == 2
        assert summary.grounding_success is True
        assert summary.warnings == []
        assert summary.search_queries == ["林黛玉 性格"]

    def test_second_pass_does_not_duplicate_markers(self):
        first = extract_and_format_citations(ANSWER, _grounding())
        second = extract_and_format_citations(first.processed_text, _grounding())
        assert second.processed_text == first.processed_text
        assert len(second.segment_citations) == 2

    def test_not_inline_builds_citations_only(self):
        result = extract_and_format_citations(ANSWER, _grounding(), inline=False)
        assert result.processed_text == ANSWER
        assert len(result.citations) == 2

    def test_out_of_range_indices_are_ignored(self):
        grounding = GroundingMetadata(chunks=[GroundingChunk(uri=URI_A)], supports=[_support(0, 7, [5])])
        result = extract_and_format_citations(ANSWER, grounding)
        assert result.processed_text == ANSWER
        assert result.segment_citations == []
        assert result.summary.grounding_success is False

    def test_no_grounding(self):
        result = extract_and_format_citations(ANSWER)
        assert result.processed_text == ANSWER
        assert result.citations == []
        assert result.summary.grounding_success is False
        assert result.summary.warnings == [NO_CITATIONS_WARNING]

    def test_failure_returns_original_text(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("bad offsets")

        monkeypatch.setattr(engine, "_splice_citations", boom)
        result = extract_and_format_citations(ANSWER, _grounding())
        assert result.processed_text == ANSWER
        assert result.citations == []
        assert result.summary.grounding_success is False
        assert result.summary.warnings == [EXTRACTION_FAILED_WARNING]


# ── Sources without supports ────────────────────────────────────

class TestSourceCitations:
    def test_referenced_sources_beyond_the_first_five(self):
        chunks = [GroundingChunk(uri=f"https://example.com/{i}") for i in range(1, 8)]
        citations = build_source_citations("見 [7]。", chunks)
        assert [c.number for c in citations] == [1, 2, 3, 4, 5, 7]

    def test_flat_sources_count_as_citations(self):
        grounding = parse_grounding_metadata({"citations": [URI_A, URI_B]})
        result = extract_and_format_citations(ANSWER, grounding)
        assert result.summary.citation_count == 2
        assert result.summary.grounding_success is True
        assert result.summary.web_sources == [URI_A, URI_B]

    def test_fallback_set(self):
        citations = ensure_citations([])
        assert len(citations) == 2
        assert all(c.type == "default" for c in citations)
        assert [c.number for c in citations] == [1, 2]

    def test_real_citations_are_kept(self):
        real = [Citation(number=1, title="知乎", url=URI_B)]
        assert ensure_citations(real) == real


# ── List utilities ──────────────────────────────────────────────

class TestCitationUtilities:
    def test_deduplicate_ignores_case(self):
        citations = [
            Citation(number=1, title="A", url=URI_B),
            Citation(number=2, title="A again", url=URI_B.upper()),
        ]
        assert [c.number for c in deduplicate_citations(citations)] == [1]

    def test_summary_line(self):
        citations = [
            Citation(number=1, title="A", url=URI_A, type="academic"),
            Citation(number=2, title="B", url=URI_B),
            Citation(number=3, title="C", url="https://guoxue.com", type="default"),
        ]
        assert create_citation_summary(citations) == "1 個學術來源、2 個網頁來源"
        assert create_citation_summary([]) == "無引用來源"

    def test_references_section(self):
        citations = [Citation(number=1, title="知乎討論", url=URI_B, snippet="黛玉葬花", domain="zhihu.com")]
        section = generate_references_section(citations)
        assert section.startswith("## 參考來源")
        assert f"[1] **[知乎討論]({URI_B})**" in section
        assert "   > 黛玉葬花" in section
        assert "   *zhihu.com*" in section

    def test_references_without_snippets(self):
        citations = [Citation(number=1, title="知乎討論", url=URI_B, snippet="黛玉葬花")]
        assert "黛玉葬花" not in generate_references_section(citations, include_snippets=False)
        assert generate_references_section([]) == ""
