"""Message content as an explicit text-or-parts sum type."""

from __future__ import annotations

from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class ImageURL(BaseModel):
    url: str

    model_config = ConfigDict(frozen=True)


class InputAudio(BaseModel):
    data: str
    format: str = "wav"

    model_config = ConfigDict(frozen=True)


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""

    model_config = ConfigDict(frozen=True)


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL

    model_config = ConfigDict(frozen=True)


class AudioPart(BaseModel):
    type: Literal["input_audio"] = "input_audio"
    input_audio: InputAudio

    model_config = ConfigDict(frozen=True)


ContentPart = Annotated[
    Union[TextPart, ImagePart, AudioPart], Field(discriminator="type")
]


class TextContent(BaseModel):
    """Plain string content."""

    kind: Literal["text"] = "text"
    text: str = ""

    model_config = ConfigDict(frozen=True)


class PartsContent(BaseModel):
    """Ordered list of typed parts (text, image, audio)."""

    kind: Literal["parts"] = "parts"
    parts: tuple[ContentPart, ...] = ()

    model_config = ConfigDict(frozen=True)


Content = Annotated[Union[TextContent, PartsContent], Field(discriminator="kind")]

EMPTY = TextContent()

_PART_TYPES = {
    "text": TextPart,
    "image_url": ImagePart,
    "input_audio": AudioPart,
}


def _coerce_part(raw: Any) -> TextPart | ImagePart | AudioPart | None:
    if isinstance(raw, (TextPart, ImagePart, AudioPart)):
        return raw
    if isinstance(raw, str):
        return TextPart(text=raw)
    if not isinstance(raw, dict):
        return None

    part_type = raw.get("type")
    model = _PART_TYPES.get(part_type) if isinstance(part_type, str) else None
    if model is not None:
        try:
            return model.model_validate(raw)
        except ValueError:
            pass
    text = raw.get("text")
    if isinstance(text, str):
        return TextPart(text=text)
    return None


def as_content(raw: Any) -> TextContent | PartsContent:
    """Normalize any accepted content representation into ``Content``."""

    if isinstance(raw, (TextContent, PartsContent)):
        return raw
    if raw is None:
        return EMPTY
    if isinstance(raw, str):
        return TextContent(text=raw)
    if isinstance(raw, dict) and raw.get("kind") in {"text", "parts"}:
        if raw["kind"] == "text":
            return TextContent(text=str(raw.get("text") or ""))
        return as_content(list(raw.get("parts") or []))
    if isinstance(raw, (list, tuple)):
        parts = [part for part in (_coerce_part(item) for item in raw) if part]
        return PartsContent(parts=tuple(parts))
    return TextContent(text=str(raw))


def content_text(content: TextContent | PartsContent) -> str:
    if isinstance(content, TextContent):
        return content.text
    return "".join(part.text for part in content.parts if isinstance(part, TextPart))


def text_length(content: TextContent | PartsContent) -> int:
    """Length of streamed text used to anchor tool calls in rendered output."""

    if isinstance(content, TextContent):
        return len(content.text)
    return 0


def append_text(content: TextContent | PartsContent, text: str) -> TextContent:
    """Append a streamed token.

    Structured content is not extended in place; a token arriving on top of
    it starts a fresh text body.
    """

    if isinstance(content, TextContent):
        return TextContent(text=content.text + text)
    return TextContent(text=text)


def is_blank(content: TextContent | PartsContent | None) -> bool:
    if content is None:
        return True
    if isinstance(content, TextContent):
        return not content.text.strip()
    return len(content.parts) == 0


def to_wire(content: TextContent | PartsContent) -> str | list[dict[str, Any]]:
    if isinstance(content, TextContent):
        return content.text
    return [part.model_dump(mode="json") for part in content.parts]


def build_parts(
    text: str,
    *,
    image_urls: Iterable[str] = (),
    audio: Iterable[tuple[str, str]] = (),
) -> TextContent | PartsContent:
    """Combine text with already-encoded attachments."""

    images = [ImagePart(image_url=ImageURL(url=url)) for url in image_urls]
    audios = [
        AudioPart(input_audio=InputAudio(data=data, format=fmt))
        for data, fmt in audio
    ]
    if not images and not audios:
        return TextContent(text=text)
    parts: list[TextPart | ImagePart | AudioPart] = [TextPart(text=text)]
    parts.extend(images)
    parts.extend(audios)
    return PartsContent(parts=tuple(parts))


class ContentBuilder:
    """Collects already-encoded attachments and combines them with typed text."""

    def __init__(self) -> None:
        self._image_urls: list[str] = []
        self._audio: list[tuple[str, str]] = []

    @property
    def has_attachments(self) -> bool:
        return bool(self._image_urls or self._audio)

    def add_image(self, url: str) -> None:
        self._image_urls.append(url)

    def add_audio(self, data: str, fmt: str = "wav") -> None:
        self._audio.append((data, fmt))

    async def build(self, text: str) -> TextContent | PartsContent:
        return build_parts(text, image_urls=self._image_urls, audio=self._audio)

    def clear(self) -> None:
        self._image_urls.clear()
        self._audio.clear()


__all__ = [
    "AudioPart",
    "Content",
    "ContentBuilder",
    "ContentPart",
    "EMPTY",
    "ImagePart",
    "ImageURL",
    "InputAudio",
    "PartsContent",
    "TextContent",
    "TextPart",
    "append_text",
    "as_content",
    "build_parts",
    "content_text",
    "is_blank",
    "text_length",
    "to_wire",
]
