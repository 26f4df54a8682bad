"""Tests for the front-matter codec."""

import pytest

from agentsync import frontmatter


class TestParse:
    """Test splitting documents into metadata and body."""

    def test_no_front_matter(self) -> None:
        """Documents without an opening delimiter are all body."""
        text = "# Title\n\nBody\n"
        assert frontmatter.parse(text) == (None, text)

    def test_scalars_and_body(self) -> None:
        """Plain and quoted scalars are read as strings."""
        text = '---\nname: code-review\ndescription: "Review: carefully"\n---\n# Body\n'
        metadata, body = frontmatter.parse(text)

        assert metadata == {"name": "code-review", "description": "Review: carefully"}
        assert body == "# Body\n"

    def test_inline_list(self) -> None:
        """Inline lists accept quoted and bare items."""
        metadata, _ = frontmatter.parse('---\npaths: ["src/**/*.ts", lib/**]\n---\n')
        assert metadata == {"paths": ["src/**/*.ts", "lib/**"]}

    def test_block_list(self) -> None:
        """Block lists may be indented or flush with the key."""
        indented = "---\npaths:\n  - a/**\n  - b/**\n---\nbody"
        flush = "---\npaths:\n- a/**\n- b/**\n---\nbody"

        assert frontmatter.parse(indented)[0] == {"paths": ["a/**", "b/**"]}
        assert frontmatter.parse(flush)[0] == {"paths": ["a/**", "b/**"]}

    def test_nested_map(self) -> None:
        """One level of nesting is read as a string map."""
        text = '---\nname: x\nmetadata:\n  agentsync_managed: "true"\n  owner: team\n---\nbody'
        metadata, body = frontmatter.parse(text)

        assert metadata == {"name": "x", "metadata": {"agentsync_managed": "true", "owner": "team"}}
        assert body == "body"

    def test_block_scalar(self) -> None:
        """Literal block scalars keep their line breaks."""
        text = "---\ndescription: |\n  line one\n  line two\nname: x\n---\n"
        metadata, _ = frontmatter.parse(text)

        assert metadata == {"description": "line one\nline two", "name": "x"}

    def test_unclosed_block_is_not_metadata(self) -> None:
        """An opening delimiter without a closing one degrades to no metadata."""
        text = "---\nname: x\n\n# Body without closing delimiter\n"
        assert frontmatter.parse(text) == (None, text)

    def test_unsupported_syntax_is_not_metadata(self) -> None:
        """Deeper nesting is outside the supported shapes."""
        text = "---\nouter:\n  inner:\n    deep: x\n---\nbody"
        assert frontmatter.parse(text) == (None, text)

    def test_horizontal_rule_in_body(self) -> None:
        """A later --- line belongs to the body."""
        text = "---\nname: x\n---\nintro\n---\nmore\n"
        metadata, body = frontmatter.parse(text)

        assert metadata == {"name": "x"}
        assert body == "intro\n---\nmore\n"

    def test_empty_block(self) -> None:
        """An empty block parses as an empty map."""
        assert frontmatter.parse("---\n---\nbody") == ({}, "body")


class TestSerialize:
    """Test rendering metadata back into documents."""

    def test_none_returns_body(self) -> None:
        """No metadata means no delimiter block."""
        assert frontmatter.serialize(None, "body\n") == "body\n"

    def test_canonical_form_round_trips(self) -> None:
        """Documents already in canonical form survive parse and serialize."""
        text = (
            "---\n"
            "name: code-review\n"
            "description: \"Checks: style and tests\"\n"
            "paths: [\"src/**/*.ts\", \"lib/**\"]\n"
            "metadata:\n"
            "  agentsync_managed: \"true\"\n"
            "  agentsync_content_hash: \"sha256:0123456789ab\"\n"
            "---\n"
            "# Body\n"
        )
        assert frontmatter.serialize(*frontmatter.parse(text)) == text

    def test_other_spellings_are_normalized(self) -> None:
        """Equivalent spellings are rewritten in canonical form."""
        text = '---\r\nname: "review"\r\npaths:\r\n  - a/**\r\n  - b/**\r\n---\r\nbody\n'

        assert frontmatter.serialize(*frontmatter.parse(text)) == (
            '---\nname: review\npaths: ["a/**", "b/**"]\n---\nbody\n'
        )

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("plain", "plain"),
            ("has: colon", '"has: colon"'),
            ("true", '"true"'),
            ("42", '"42"'),
            ("", '""'),
            ('say "hi"', '"say \\"hi\\""'),
            ("-dash", '"-dash"'),
        ],
    )
    def test_format_scalar(self, value: str, expected: str) -> None:
        """Values that would read back differently are quoted."""
        assert frontmatter.format_scalar(value) == expected

    def test_quoted_values_read_back(self) -> None:
        """Serialized special values parse to the same strings."""
        metadata = {"a": "x: y", "b": "it's", "c": 'q"uote', "d": "line\nbreak", "e": "true"}
        parsed, body = frontmatter.parse(frontmatter.serialize(metadata, "body"))

        assert parsed == metadata
        assert body == "body"
