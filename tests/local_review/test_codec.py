"""Tests for codec.py thread file serialization and parsing."""

import json

import pytest

from local_review.codec import (
    COMMENT_PREFIX,
    MalformedInput,
    decode_range,
    decode_thread_json,
    decode_thread_metadata,
    escape_xml_attr,
    format_range_label,
    parse_thread,
    serialize_thread,
    unescape_xml_attr,
)
from local_review.models import AnchorContext, AnchorGit, Range, ThreadStatus


def _meta_block(meta: dict) -> str:
    return "<local-code-review-thread>\n" + json.dumps(meta) + "\n</local-code-review-thread>\n"


def _minimal_meta(**overrides) -> dict:
    meta = {
        "schemaVersion": 1,
        "id": "t1",
        "target": {"workspaceRelativePath": "src/a.py", "range": None, "anchor": {"kind": "lineRange"}},
        "status": "open",
        "createdAt": "2026-01-01T00:00:00.000Z",
        "updatedAt": "2026-01-01T00:00:00.000Z",
    }
    meta.update(overrides)
    return meta


@pytest.fixture
def full_thread(make_thread):
    return make_thread(
        context=AnchorContext(
            before=["export function add(a, b) {"],
            selection="  return a + b;",
            after=["}"],
        ),
        git=AnchorGit(
            base_ref="main",
            hunk_header="@@ -1,3 +1,3 @@",
            hunk_patch="@@ -1,3 +1,3 @@\n export function add(a, b) {\n-  return a;\n+  return a + b;\n }",
        ),
        comments=[
            ("alice", "Should this handle `null`?\n\n```suggestion\n  return (a ?? 0) + b;\n```"),
            ('Bob "B" <b@x>', "Fixed."),
            ("carol", ""),
        ],
    )


class TestSerializeThread:
    """Tests for serialize_thread."""

    def test_layout(self, full_thread) -> None:
        text = serialize_thread(full_thread)
        lines = text.splitlines()

        assert lines[0] == "<local-code-review-thread>"
        assert "# src/example.ts:L2 · open" in lines
        assert "## Context" in lines
        assert "## Git" in lines
        assert "- baseRef: main" in lines
        assert "- hunkHeader: @@ -1,3 +1,3 @@" in lines
        assert "## Patch" in lines
        assert "```diff" in lines
        assert "## Comments" in lines
        assert text.endswith("\n")

    def test_metadata_excludes_comments_and_patch(self, full_thread) -> None:
        text = serialize_thread(full_thread)
        meta_json = text.split("<local-code-review-thread>\n", 1)[1].split("\n</local-code-review-thread>", 1)[0]
        meta = json.loads(meta_json)

        assert "comments" not in meta
        assert meta["target"]["anchor"]["git"] == {"baseRef": "main", "hunkHeader": "@@ -1,3 +1,3 @@"}
        assert meta["target"]["range"] == {"startLine": 1, "startCharacter": 0, "endLine": 1, "endCharacter": 15}

    def test_attributes_are_escaped(self, full_thread) -> None:
        text = serialize_thread(full_thread)
        assert 'author="Bob &quot;B&quot; &lt;b@x&gt;"' in text

    def test_whole_file_thread_label(self, make_thread) -> None:
        text = serialize_thread(make_thread(range_=None, status=ThreadStatus.RESOLVED))
        assert "# src/example.ts:File · resolved" in text
        assert "## Context" not in text
        assert "## Patch" not in text

    def test_patch_only_git_omits_git_section(self, make_thread) -> None:
        thread = make_thread(git=AnchorGit(hunk_patch="@@ -1 +1 @@\n-a\n+b"))
        text = serialize_thread(thread)
        assert "## Git" not in text
        assert "## Patch" in text
        assert parse_thread(text).target.anchor.git.hunk_patch == "@@ -1 +1 @@\n-a\n+b"


class TestRoundTrip:
    """Serialize and parse are inverse operations."""

    def test_parse_of_serialize_preserves_thread(self, full_thread) -> None:
        parsed = parse_thread(serialize_thread(full_thread))

        assert parsed is not None
        assert parsed.model_dump() == full_thread.model_dump()

    def test_serialize_is_idempotent(self, full_thread) -> None:
        once = serialize_thread(full_thread)
        twice = serialize_thread(parse_thread(once))
        assert twice == once

    def test_multi_paragraph_bodies(self, make_thread) -> None:
        thread = make_thread(comments=[("a", "first\n\n\nsecond"), ("b", "\nleading blank")])
        parsed = parse_thread(serialize_thread(thread))
        assert [c.body_markdown for c in parsed.comments] == ["first\n\n\nsecond", "\nleading blank"]

    def test_padded_author_round_trips(self, make_thread) -> None:
        """Whitespace around an author name does not survive, on either side."""
        thread = make_thread(comments=[(" Alice ", "hi")])
        parsed = parse_thread(serialize_thread(thread))

        assert thread.comments[0].author == "Alice"
        assert parsed.model_dump() == thread.model_dump()


class TestParseThread:
    """Tests for tolerant parsing of hand-edited files."""

    def test_entity_decoding_in_marker(self) -> None:
        text = (
            _meta_block(_minimal_meta())
            + "\n## Comments\n\n"
            + f'{COMMENT_PREFIX} id="c1" author="A&amp;B" createdAt="2000-01-01T00:00:00.000Z"/>\n\nHello\n'
        )
        thread = parse_thread(text)

        assert thread is not None
        assert thread.comments[0].author == "A&B"
        assert thread.comments[0].body_markdown == "Hello"
        assert thread.comments[0].created_at == "2000-01-01T00:00:00.000Z"

    def test_unsupported_schema_version(self) -> None:
        assert parse_thread(_meta_block(_minimal_meta(schemaVersion=2))) is None

    def test_missing_metadata_block(self) -> None:
        assert parse_thread("# Just a heading\n") is None

    def test_unterminated_metadata_block(self) -> None:
        assert parse_thread("<local-code-review-thread>\n{}\n") is None

    def test_invalid_json(self) -> None:
        assert parse_thread("<local-code-review-thread>\n{not json\n</local-code-review-thread>\n") is None

    def test_partial_range_is_invalid(self) -> None:
        meta = _minimal_meta()
        meta["target"]["range"] = {"startLine": 1, "startCharacter": 0}
        assert parse_thread(_meta_block(meta)) is None

    def test_marker_defaults(self) -> None:
        text = _meta_block(_minimal_meta()) + f"\n{COMMENT_PREFIX}/>\nbody\n"
        (comment,) = parse_thread(text).comments

        assert comment.id == "t1:0"
        assert comment.author == "unknown"
        assert comment.created_at == "2026-01-01T00:00:00.000Z"
        assert comment.body_markdown == "body"

    def test_crlf_file(self, full_thread) -> None:
        text = serialize_thread(full_thread).replace("\n", "\r\n")
        assert parse_thread(text).model_dump() == full_thread.model_dump()

    def test_missing_timestamps_use_clock(self, clock) -> None:
        meta = _minimal_meta()
        del meta["createdAt"]
        del meta["updatedAt"]
        thread = parse_thread(_meta_block(meta), clock)
        assert thread.created_at == "2026-02-01T10:00:00.000Z"
        assert thread.updated_at == thread.created_at

    def test_legacy_state_field(self) -> None:
        meta = _minimal_meta()
        del meta["status"]
        meta["state"] = "resolved"
        assert parse_thread(_meta_block(meta)).status == ThreadStatus.RESOLVED

    def test_invalid_context_is_dropped(self) -> None:
        meta = _minimal_meta()
        meta["target"]["anchor"]["context"] = {"before": "nope", "selection": "x", "after": []}
        thread = parse_thread(_meta_block(meta))
        assert thread is not None
        assert thread.target.anchor.context is None

    def test_unknown_fields_ignored(self) -> None:
        thread = parse_thread(_meta_block(_minimal_meta(extra={"x": 1})))
        assert thread is not None


class TestDecoders:
    """Tests for the JSON field decoders."""

    def test_decode_range(self) -> None:
        assert decode_range(None) is None
        assert decode_range({"startLine": 1, "startCharacter": 2, "endLine": 3, "endCharacter": 4.0}) == Range(
            start_line=1, start_character=2, end_line=3, end_character=4
        )
        with pytest.raises(MalformedInput):
            decode_range({"startLine": -1, "startCharacter": 0, "endLine": 0, "endCharacter": 0})
        with pytest.raises(MalformedInput):
            decode_range([1, 2, 3, 4])

    def test_decode_thread_metadata_requires_id_and_path(self) -> None:
        assert decode_thread_metadata(_minimal_meta(id="")) is None
        meta = _minimal_meta()
        meta["target"]["workspaceRelativePath"] = ""
        assert decode_thread_metadata(meta) is None
        assert decode_thread_metadata(_minimal_meta(schemaVersion=True)) is None
        assert decode_thread_metadata("not a dict") is None

    def test_decode_thread_json_with_inline_comments(self) -> None:
        data = _minimal_meta(
            comments=[
                {"id": "c1", "author": "a", "bodyMarkdown": "one", "createdAt": "x"},
                "skip me",
                {"body": "two"},
            ]
        )
        thread = decode_thread_json(data)

        assert [c.body_markdown for c in thread.comments] == ["one", "two"]
        assert thread.comments[1].id == "t1:2"
        assert thread.comments[1].author == "unknown"


class TestHelpers:
    """Tests for small formatting helpers."""

    def test_escape_round_trip(self) -> None:
        raw = 'a & b "c" <d>'
        assert unescape_xml_attr(escape_xml_attr(raw)) == raw
        assert escape_xml_attr("&lt;") == "&amp;lt;"

    def test_format_range_label(self) -> None:
        assert format_range_label(None) == "File"
        assert format_range_label(Range(start_line=0, start_character=0, end_line=2, end_character=0)) == "L1-L3"
