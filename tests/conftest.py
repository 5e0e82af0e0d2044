"""Pytest configuration and fixtures for the NovelGen studio."""

import io
from typing import List, Tuple

import pytest
from PIL import Image

from novelgen import PromptLogger, to_data_uri, GenerationError
from studio import Studio, ComicState, create_panel


def png_bytes(color: str = "red", size: Tuple[int, int] = (8, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def png_uri(color: str = "red") -> str:
    return to_data_uri(png_bytes(color), "image/png")


class FakeGateway:
    """Records calls instead of talking to a provider."""

    def __init__(self, result: str = None, text: str = "A new idea", fail: bool = False):
        self.result = result or png_uri("blue")
        self.text = text
        self.fail = fail
        self.prompt_log = PromptLogger()
        self.calls: List[tuple] = []

    def _record(self, *call):
        self.calls.append(call)
        if self.fail:
            raise GenerationError("generation failed")

    def generate_image(self, prompt, aspect_ratio="1:1"):
        self._record("generate_image", prompt, aspect_ratio)
        return self.result

    def generate_image_from_reference(self, reference, prompt):
        self._record("generate_image_from_reference", reference, prompt)
        return self.result

    def edit_image(self, source, instruction):
        self._record("edit_image", source, instruction)
        return self.result

    def generate_narrative(self, kind, context, character_context=""):
        self._record("generate_narrative", kind, context, character_context)
        return self.text


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def studio(gateway) -> Studio:
    return Studio(gateway=gateway)


@pytest.fixture
def one_panel() -> ComicState:
    return create_panel(ComicState(), png_uri(), "a cat on a roof")
