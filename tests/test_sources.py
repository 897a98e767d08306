"""Tests for source normalization, ids, anchors and quality hints."""

import base64
from datetime import datetime, timezone

import pytest

from mosaic.context.normalizer import (
    ExtractedContent,
    PageImage,
    decode_data_url,
    normalize,
    normalize_chatlog,
    normalize_many,
    normalize_note,
    normalize_pdf,
    normalize_webpage,
    parse_chatlog_text,
    split_page_markers,
)
from mosaic.context.quality import assess_quality, describe_quality, is_quality_sufficient_for_text, worst_quality
from mosaic.errors import InvalidAnchorError, NormalizationError
from mosaic.models.anchor import (
    compute_source_id,
    is_valid_anchor,
    make_anchor,
    parse_anchor,
    resolve_anchor,
    source_id_of,
)
from mosaic.models.source import (
    BinaryBlob,
    ChatlogSource,
    ImageSource,
    NoteSource,
    PdfPage,
    PdfSource,
    QualityHint,
    WebpageSource,
)
from mosaic.probe.fixtures import TINY_PNG_BASE64


class TestSourceIds:
    def test_same_bytes_same_id(self):
        a = normalize_note("First title", "identical body")
        b = normalize_note("Another title", "identical body")
        assert a.source_id == b.source_id

    def test_capture_time_does_not_change_id(self):
        early = normalize_webpage("Page", "body text", captured_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        late = normalize_webpage("Page", "body text", captured_at=datetime(2025, 6, 1, tzinfo=timezone.utc))
        assert early.source_id == late.source_id
        assert early.captured_at != late.captured_at

    def test_different_bytes_different_id(self):
        assert normalize_note("n", "alpha").source_id != normalize_note("n", "beta").source_id

    def test_id_format(self):
        source_id = compute_source_id(b"anything")
        assert source_id.startswith("src:")
        assert len(source_id) == 12
        int(source_id[4:], 16)

    def test_pdf_id_depends_on_page_content(self, make_pdf):
        assert make_pdf(pages=2).source_id == make_pdf(pages=2, title="Renamed").source_id
        assert make_pdf(pages=2).source_id != make_pdf(pages=3).source_id

    def test_screenshot_only_pages_differ_by_pixels(self):
        a = normalize_webpage("A", "", screenshot=BinaryBlob(b"\x89PNGaaaa", "image/png"))
        b = normalize_webpage("B", "", screenshot=BinaryBlob(b"\x89PNGbbbb", "image/png"))
        again = normalize_webpage("C", "", screenshot=BinaryBlob(b"\x89PNGaaaa", "image/png"))
        assert a.source_id != b.source_id
        assert a.source_id != compute_source_id(b"")
        assert again.source_id == a.source_id


class TestAnchors:
    def test_page_anchor_round_trip(self):
        anchor = make_anchor("src:1a2b3c4d", page=3)
        assert anchor == "src:1a2b3c4d#p=3"
        parsed = parse_anchor(anchor)
        assert parsed.source_id == "src:1a2b3c4d"
        assert parsed.location_type == "page"
        assert parsed.page == 3

    def test_other_locations(self):
        assert make_anchor("src:1a2b3c4d", section="2.1") == "src:1a2b3c4d#sec=2.1"
        assert make_anchor("src:1a2b3c4d", message=4) == "src:1a2b3c4d#msg=4"
        assert make_anchor("src:1a2b3c4d", region=(1, 2, 30, 40)) == "src:1a2b3c4d#r=1,2,30,40"

    @pytest.mark.parametrize(
        "anchor",
        ["src:1a2b3c4", "src:1A2B3C4D", "doc:1a2b3c4d", "src:1a2b3c4d#p=", "src:1a2b3c4d#p=x", "src:1a2b3c4d#q=1"],
    )
    def test_invalid_anchors(self, anchor):
        assert not is_valid_anchor(anchor)
        with pytest.raises(InvalidAnchorError):
            parse_anchor(anchor)

    def test_invalid_anchor_is_value_error(self):
        with pytest.raises(ValueError):
            source_id_of("nonsense")

    def test_only_one_location(self):
        with pytest.raises(InvalidAnchorError):
            make_anchor("src:1a2b3c4d", page=1, message=2)

    def test_resolve_anchor(self, make_pdf, note):
        pdf = make_pdf(pages=2)
        sources = [pdf, note]
        assert resolve_anchor(sources, make_anchor(pdf.source_id, page=2)) is pdf
        assert resolve_anchor(sources, make_anchor(pdf.source_id, page=9)) is None
        assert resolve_anchor(sources, note.source_id) is note
        assert resolve_anchor(sources, "src:00000000") is None


class TestNormalizers:
    def test_webpage(self, png_blob):
        source = normalize_webpage("  Title  ", "Some text", url="https://x.test", screenshot=png_blob)
        assert isinstance(source, WebpageSource)
        assert source.title == "Title"
        assert source.screenshot == png_blob

    def test_webpage_needs_text_or_screenshot(self):
        with pytest.raises(NormalizationError):
            normalize_webpage("Empty", "   ")

    def test_missing_title(self):
        with pytest.raises(NormalizationError) as exc_info:
            normalize_note("", "body")
        assert exc_info.value.kind == "note"

    def test_pdf_pages_sorted_and_graded(self):
        source = normalize_pdf(
            "Paper",
            [PdfPage(page_number=2, text="Second page text."), PdfPage(page_number=1, text="First page text.")],
        )
        assert [p.page_number for p in source.pages] == [1, 2]
        assert all(p.quality is not None for p in source.pages)

    def test_pdf_duplicate_pages_rejected(self):
        with pytest.raises(NormalizationError):
            normalize_pdf("Paper", [PdfPage(page_number=1, text="a"), PdfPage(page_number=1, text="b")])

    def test_pdf_without_content_rejected(self):
        with pytest.raises(NormalizationError):
            normalize_pdf("Paper", [PdfPage(page_number=1)])

    def test_chatlog_indexes_messages(self):
        source = normalize_chatlog("Chat", [("user", "hi"), ("assistant", "hello")], model="gpt-4o")
        assert [m.index for m in source.messages] == [0, 1]
        assert source.text == "user: hi\n\nassistant: hello"

    def test_chatlog_needs_messages(self):
        with pytest.raises(NormalizationError):
            normalize_chatlog("Chat", [])


class TestExtractedContent:
    def test_html_with_screenshot(self):
        item = ExtractedContent(
            type="html",
            title="Article",
            url="https://example.com",
            content="Body text",
            screenshot=f"data:image/png;base64,{TINY_PNG_BASE64}",
        )
        source = normalize(item)
        assert isinstance(source, WebpageSource)
        assert source.screenshot.mime_type == "image/png"
        assert source.screenshot.data == base64.b64decode(TINY_PNG_BASE64)

    def test_pdf_page_markers(self):
        item = ExtractedContent(
            type="pdf",
            title="Paper",
            content="--- Page 1 ---\nIntro text\n--- Page 2 ---\nMethods text",
            page_images=[PageImage(page_number=2, data=TINY_PNG_BASE64)],
        )
        source = normalize(item)
        assert isinstance(source, PdfSource)
        assert [p.text for p in source.pages] == ["Intro text", "Methods text"]
        assert source.page(1).image is None
        assert source.page(2).image is not None

    def test_single_page_marker_keeps_its_number(self):
        item = ExtractedContent(type="pdf", title="Excerpt", content="--- Page 7 ---\nOnly this page was extracted.")
        source = normalize(item)
        assert [p.page_number for p in source.pages] == [7]
        assert source.page(7).text == "Only this page was extracted."

    def test_repeated_page_marker_rejected(self):
        item = ExtractedContent(
            type="pdf", title="Garbled", content="--- Page 1 ---\nfirst\n--- Page 1 ---\nsecond"
        )
        with pytest.raises(NormalizationError) as exc_info:
            normalize(item)
        assert exc_info.value.title == "Garbled"
        assert exc_info.value.kind == "pdf"

    def test_image(self):
        item = ExtractedContent(type="image", title="Photo", image_data=TINY_PNG_BASE64, content="A red square")
        source = normalize(item)
        assert isinstance(source, ImageSource)
        assert source.alt_text == "A red square"

    def test_image_without_data(self):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(ExtractedContent(type="image", title="Photo"))
        assert exc_info.value.title == "Photo"
        assert exc_info.value.kind == "image"

    def test_text_is_note(self):
        assert isinstance(normalize(ExtractedContent(type="text", title="Note", content="plain")), NoteSource)

    def test_text_with_sections_is_chatlog(self):
        content = "User Query: What is 2+2?\nAssistant Response: 4\nModel: gpt-4o"
        source = normalize(ExtractedContent(type="text", title="Saved answer", content=content))
        assert isinstance(source, ChatlogSource)
        assert [(m.role, m.content) for m in source.messages] == [("user", "What is 2+2?"), ("assistant", "4")]

    def test_metadata_marks_chatlog(self):
        item = ExtractedContent(type="text", title="Saved", content="Just the answer", metadata={"slug": "abc"})
        source = normalize(item)
        assert isinstance(source, ChatlogSource)
        assert source.messages[0].role == "assistant"

    def test_normalize_many_skips_bad_items(self):
        report = normalize_many(
            [
                ExtractedContent(type="text", title="Good", content="fine"),
                ExtractedContent(type="text", title="", content="no title"),
                ExtractedContent(type="image", title="Broken", image_data="!!!not base64!!!"),
                ExtractedContent(type="text", title="Also good", content="also fine"),
            ]
        )
        assert [s.title for s in report.sources] == ["Good", "Also good"]
        assert len(report.errors) == 2
        assert report.errors[1].title == "Broken"


class TestHelpers:
    def test_decode_data_url(self):
        blob = decode_data_url("data:image/jpeg;base64,AAEC")
        assert blob.mime_type == "image/jpeg"
        assert blob.data == b"\x00\x01\x02"

    def test_decode_bare_base64(self):
        assert decode_data_url("AAEC", "image/png").mime_type == "image/png"

    def test_decode_invalid(self):
        with pytest.raises(NormalizationError):
            decode_data_url("data:image/png;base64,%%%")

    def test_split_page_markers(self):
        assert split_page_markers("--- Page 1 ---\na\n--- Page 3 ---\nc") == [(1, "a"), (3, "c")]

    def test_parse_chatlog_text_fallback(self):
        assert parse_chatlog_text("only an answer") == [("assistant", "only an answer")]


class TestQuality:
    def test_clean_prose_is_good(self):
        text = "The committee reviewed the proposal and agreed to proceed with the second phase next quarter."
        assert assess_quality(text) is QualityHint.GOOD

    def test_empty_is_low(self):
        assert assess_quality("   ") is QualityHint.LOW

    def test_control_characters_are_low(self):
        assert assess_quality("abc\x01\x02\x03\x04def\x05\x06") is QualityHint.LOW

    def test_scattered_letters_are_ocr_like(self):
        text = " ".join(["T h e q u i c k b r o w n f o x"] * 3) + " jumps over the fence"
        assert assess_quality(text) in (QualityHint.OCR_LIKE, QualityHint.LOW)

    def test_worst_quality(self):
        assert worst_quality([QualityHint.GOOD, None, QualityHint.MIXED]) is QualityHint.MIXED
        assert worst_quality([]) is QualityHint.GOOD

    def test_descriptions(self):
        assert describe_quality(QualityHint.OCR_LIKE).startswith("OCR-like")
        assert is_quality_sufficient_for_text(QualityHint.MIXED)
        assert not is_quality_sufficient_for_text(QualityHint.LOW)
