from multichat.content import (
    EMPTY,
    ContentBuilder,
    ImagePart,
    PartsContent,
    TextContent,
    TextPart,
    append_text,
    as_content,
    content_text,
    is_blank,
    text_length,
    to_wire,
)

import pytest


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_as_content_normalizes_strings_and_none() -> None:
    assert as_content("hello") == TextContent(text="hello")
    assert as_content(None) is EMPTY


def test_as_content_normalizes_part_lists() -> None:
    content = as_content(
        [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
            {"text": "untyped"},
            42,
        ]
    )

    assert isinstance(content, PartsContent)
    assert len(content.parts) == 3
    assert isinstance(content.parts[1], ImagePart)
    assert content.parts[2] == TextPart(text="untyped")
    assert content_text(content) == "lookuntyped"


def test_as_content_accepts_serialized_sum_type() -> None:
    dumped = TextContent(text="hi").model_dump()

    assert as_content(dumped) == TextContent(text="hi")
    assert as_content({"kind": "parts", "parts": ["a"]}) == PartsContent(
        parts=(TextPart(text="a"),)
    )


def test_append_text_extends_text_and_restarts_parts() -> None:
    assert append_text(TextContent(text="Hi"), "! ") == TextContent(text="Hi! ")
    parts = PartsContent(parts=(TextPart(text="old"),))
    assert append_text(parts, "new") == TextContent(text="new")


def test_is_blank_and_text_length() -> None:
    assert is_blank(None)
    assert is_blank(TextContent(text="   "))
    assert is_blank(PartsContent())
    assert not is_blank(PartsContent(parts=(TextPart(text=""),)))
    assert text_length(TextContent(text="abcd")) == 4
    assert text_length(PartsContent(parts=(TextPart(text="abcd"),))) == 0


def test_to_wire_renders_strings_and_part_dicts() -> None:
    assert to_wire(TextContent(text="plain")) == "plain"
    assert to_wire(as_content([{"type": "text", "text": "x"}])) == [
        {"type": "text", "text": "x"}
    ]


@pytest.mark.anyio
async def test_content_builder_combines_text_and_attachments() -> None:
    builder = ContentBuilder()
    assert not builder.has_attachments
    assert await builder.build("just text") == TextContent(text="just text")

    builder.add_image("data:image/png;base64,AAA")
    builder.add_audio("UklGRg==", "mp3")
    content = await builder.build("describe")

    assert isinstance(content, PartsContent)
    assert [part.type for part in content.parts] == ["text", "image_url", "input_audio"]
    assert content.parts[2].input_audio.format == "mp3"

    builder.clear()
    assert not builder.has_attachments
