# novelgen.py
from typing import Literal, get_args
import os
import io
import re
import base64
import logging
import uuid
from pathlib import Path
from typing import List, Optional, Dict, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from PIL import Image, UnidentifiedImageError

# Google AI SDK (text, Imagen and flash image models)
from google import genai
from google.genai import types

# Fal AI SDK, alternative image provider
import fal_client
import requests

logger = logging.getLogger(__name__)

# ------------------ ENV & CONFIG ------------------
load_dotenv()
API_KEY = os.getenv("GEMINI_API_KEY")
FAL_API_KEY = os.getenv("FAL_API_KEY")

# "gemini" (Imagen + flash image) or "fal" (nano banana)
IMAGE_PROVIDER = os.getenv("IMAGE_PROVIDER", "gemini").lower()

# Models (override via env if your account uses different names)
TEXT_MODEL = os.getenv("TEXT_MODEL", "gemini-2.5-flash")
IMAGEN_MODEL = os.getenv("IMAGEN_MODEL", "imagen-4.0-generate-001")
IMAGE_EDIT_MODEL = os.getenv("IMAGE_EDIT_MODEL", "gemini-2.5-flash-image")
FAL_IMAGE_MODEL = os.getenv("FAL_IMAGE_MODEL", "fal-ai/nano-banana")
FAL_EDIT_MODEL = os.getenv("FAL_EDIT_MODEL", "fal-ai/nano-banana/edit")

# reference images are shrunk to this longest side before upload
UPLOAD_MAX_SIZE = int(os.getenv("UPLOAD_MAX_SIZE", "1024"))
PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "1") == "1"
PROMPT_LOG_LIMIT = int(os.getenv("PROMPT_LOG_LIMIT", "200"))

# ------------------ ERRORS ------------------------


class StudioError(Exception):
    """Base class for errors surfaced to the user as a notice."""


class GenerationError(StudioError, RuntimeError):
    """The provider call failed or returned no usable payload."""


class InvalidTargetError(StudioError, ValueError):
    """The request targets a slot/panel it cannot operate on."""


class StudioBusyError(StudioError):
    """Another request is still in flight."""


class PanelNotFoundError(StudioError, LookupError):
    pass


class CharacterNotFoundError(StudioError, LookupError):
    pass

# ------------------ TAGS & TABLES -----------------


SplitLayout = Literal["SINGLE", "DOUBLE_V", "DOUBLE_H", "TRIPLE_V", "TRIPLE_H",
                      "QUAD", "BIG_LEFT", "BIG_RIGHT", "BIG_TOP", "BIG_BOTTOM"]
AspectRatio = Literal["1:1", "16:9", "9:16"]
OverlayType = Literal["NONE", "BUBBLE_LEFT", "BUBBLE_RIGHT", "THOUGHT", "WHISPER",
                      "SHOUT", "CAPTION_BOX", "ONOMATOPOEIA"]
GenerationMode = Literal["CREATE", "EDIT", "STORY"]
ComicStyle = Literal["MODERN", "SUPERHERO", "MANGA", "GHIBLI", "NOIR", "RETRO",
                     "CYBERPUNK", "FANTASY", "HORROR", "SKETCH", "WATERCOLOR"]
GridLayout = Literal["STANDARD", "CLASSIC", "VERTICAL", "DYNAMIC", "STORYBOARD"]
GutterSize = Literal["NONE", "TINY", "SMALL", "MEDIUM", "LARGE", "HUGE"]
NarrativeKind = Literal["PLOT", "DIALOGUE", "NEXT_PANEL"]

STYLE_PROMPTS: Dict[ComicStyle, str] = {
    "MODERN": "modern comic book style, crisp lines, vibrant colors, digital art",
    "SUPERHERO": "classic american superhero comic style, marvel style, dynamic action poses, bold colors, detailed muscle anatomy, cinematic composition",
    "MANGA": "manga style, anime aesthetic, expressive characters, detailed ink lines, screentones",
    "GHIBLI": "studio ghibli style, hayao miyazaki art style, beautiful painted backgrounds, whimsical, soft colors, highly detailed nature",
    "NOIR": "film noir style, high contrast black and white comic, dramatic shadows, mysterious atmosphere, frank miller style",
    "RETRO": "vintage 1950s comic style, halftone dots, retro color palette, aged paper texture, golden age comics",
    "CYBERPUNK": "cyberpunk style, neon lights, futuristic city, high tech, rain-slicked streets, vibrant neon colors",
    "FANTASY": "fantasy comic style, oil painting aesthetic, epic lighting, dungeons and dragons art style",
    "HORROR": "horror comic style, junji ito style, eerie atmosphere, dark gritty details, high contrast",
    "SKETCH": "rough sketch comic style, pencil textures, loose lines, charcoal, artistic unfinished look",
    "WATERCOLOR": "watercolor comic style, artistic, soft edges, bleeding colors, dreamlike atmosphere",
}

SLOT_COUNTS: Dict[SplitLayout, int] = {
    "SINGLE": 1,
    "DOUBLE_V": 2,
    "DOUBLE_H": 2,
    "TRIPLE_V": 3,
    "TRIPLE_H": 3,
    "BIG_LEFT": 3,
    "BIG_RIGHT": 3,
    "BIG_TOP": 3,
    "BIG_BOTTOM": 3,
    "QUAD": 4,
}

# (columns, rows) of the grid inside a panel
GRID_SHAPES: Dict[SplitLayout, Tuple[int, int]] = {
    "SINGLE": (1, 1),
    "DOUBLE_V": (2, 1),
    "DOUBLE_H": (1, 2),
    "TRIPLE_V": (3, 1),
    "TRIPLE_H": (1, 3),
    "QUAD": (2, 2),
    "BIG_LEFT": (2, 2),
    "BIG_RIGHT": (2, 2),
    "BIG_TOP": (2, 2),
    "BIG_BOTTOM": (2, 2),
}

# page columns; also the widest span a panel can use on that page
GRID_COLUMNS: Dict[GridLayout, int] = {
    "STANDARD": 3,
    "CLASSIC": 2,
    "VERTICAL": 1,
    "DYNAMIC": 4,
    "STORYBOARD": 6,
}

GUTTER_PX: Dict[GutterSize, int] = {
    "NONE": 0,
    "TINY": 8,
    "SMALL": 20,
    "MEDIUM": 32,
    "LARGE": 48,
    "HUGE": 64,
}
PAGE_PADDING_PX = 32


def _check_exhaustive(table: dict, tag_type) -> None:
    missing = set(get_args(tag_type)) - set(table)
    extra = set(table) - set(get_args(tag_type))
    if missing or extra:
        raise RuntimeError(
            f"Lookup table out of sync with its tags: missing={sorted(missing)} extra={sorted(extra)}")


for _table, _tags in ((STYLE_PROMPTS, ComicStyle), (SLOT_COUNTS, SplitLayout),
                      (GRID_SHAPES, SplitLayout), (GRID_COLUMNS, GridLayout),
                      (GUTTER_PX, GutterSize)):
    _check_exhaustive(_table, _tags)

# ------------------ DATA MODELS -------------------


def new_id() -> str:
    return str(uuid.uuid4())


class ComicImage(BaseModel):
    id: str = Field(default_factory=new_id)
    # data: URI, empty while the slot is a placeholder
    url: str = ""
    prompt: str = ""

    @property
    def filled(self) -> bool:
        return bool(self.url)


class ComicPanel(BaseModel):
    id: str = Field(default_factory=new_id)
    images: List[ComicImage] = Field(default_factory=lambda: [ComicImage()])
    splitLayout: SplitLayout = "SINGLE"
    caption: str = ""
    aspectRatio: AspectRatio = "1:1"
    colSpan: int = Field(default=1, ge=1, le=6)
    overlayType: OverlayType = "NONE"

    def find_image(self, image_id: Optional[str]) -> Optional[ComicImage]:
        for img in self.images:
            if img.id == image_id:
                return img
        return None


class Character(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    description: str = ""


class SlotPlacement(BaseModel):
    index: int
    # 1-based grid lines; None means automatic placement
    column: Optional[int] = None
    row: Optional[int] = None
    colSpan: int = 1
    rowSpan: int = 1


class PageLayout(BaseModel):
    gridLayout: GridLayout
    gutterSize: GutterSize
    columns: int
    gapPx: int
    paddingPx: int
    # VERTICAL pages stack panels full width instead of using a grid
    stacked: bool

# ------------------ LAYOUTS -----------------------


def slot_count(layout: SplitLayout) -> int:
    return SLOT_COUNTS[layout]


def grid_shape(layout: SplitLayout) -> Tuple[int, int]:
    return GRID_SHAPES[layout]


def reconcile_slots(images: List[ComicImage], layout: SplitLayout) -> List[ComicImage]:
    """Return a slot list sized for `layout`.

    Growing appends empty placeholders after the existing slots. Shrinking
    keeps the first N slots and drops the rest for good.
    """
    target = slot_count(layout)
    if len(images) < target:
        return list(images) + [ComicImage() for _ in range(target - len(images))]
    if len(images) > target:
        dropped = images[target:]
        lost = sum(1 for img in dropped if img.filled)
        if lost:
            logger.warning("Layout %s drops %d filled slot(s); their images are discarded",
                           layout, lost)
        return list(images[:target])
    return list(images)


def slot_placement(layout: SplitLayout, index: int) -> SlotPlacement:
    if layout == "BIG_LEFT" and index == 0:
        return SlotPlacement(index=index, rowSpan=2)
    if layout == "BIG_RIGHT" and index == 2:
        return SlotPlacement(index=index, column=2, row=1, rowSpan=2)
    if layout == "BIG_TOP" and index == 0:
        return SlotPlacement(index=index, colSpan=2)
    if layout == "BIG_BOTTOM" and index == 2:
        return SlotPlacement(index=index, colSpan=2)
    return SlotPlacement(index=index)


def slot_placements(layout: SplitLayout) -> List[SlotPlacement]:
    return [slot_placement(layout, i) for i in range(slot_count(layout))]


def effective_span(panel: ComicPanel, grid: GridLayout) -> int:
    return min(panel.colSpan, GRID_COLUMNS[grid])


def page_layout(grid: GridLayout, gutter: GutterSize) -> PageLayout:
    return PageLayout(
        gridLayout=grid,
        gutterSize=gutter,
        columns=GRID_COLUMNS[grid],
        gapPx=GUTTER_PX[gutter],
        paddingPx=0 if gutter == "NONE" and grid != "VERTICAL" else PAGE_PADDING_PX,
        stacked=grid == "VERTICAL",
    )

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


PANEL_GENERATE_TPL = load_prompt("panel_generate")
PANEL_EDIT_TPL = load_prompt("panel_edit")
SKETCH_TRANSFORM_TPL = load_prompt("sketch_transform")
NARRATIVE_TPLS: Dict[NarrativeKind, str] = {
    "PLOT": load_prompt("story_plot"),
    "DIALOGUE": load_prompt("story_dialogue"),
    "NEXT_PANEL": load_prompt("story_next_panel"),
}


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving other braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", v)
    return out


def character_context(characters: List[Character]) -> str:
    if not characters:
        return ""
    return ". ".join(f"{c.name.strip()}: {c.description.strip()}" for c in characters)


def build_generate_prompt(scene: str, style: ComicStyle, characters: List[Character]) -> str:
    roster = character_context(characters)
    clause = f"Defined Characters (MUST MATCH EXACTLY): {roster}." if roster else ""
    out = fill(PANEL_GENERATE_TPL, style=STYLE_PROMPTS[style],
               characters_clause=clause, scene=scene.strip())
    # drop the empty line left by a missing roster
    return "\n".join(line for line in out.splitlines() if line.strip())


def build_sketch_prompt(prompt: str) -> str:
    return fill(SKETCH_TRANSFORM_TPL, prompt=prompt).strip()


def build_edit_prompt(instruction: str, characters: List[Character]) -> str:
    roster = character_context(characters)
    if not roster:
        return instruction.strip()
    return fill(PANEL_EDIT_TPL, instruction=instruction.strip(), characters=roster).strip()


def build_narrative_prompt(kind: NarrativeKind, context: str, characters: str = "") -> str:
    if kind not in NARRATIVE_TPLS:
        raise ValueError(f"Unknown narrative kind: {kind}")
    clause = ""
    if characters and kind == "PLOT":
        clause = f"Include these established characters in the scene: {characters}"
    elif characters and kind == "NEXT_PANEL":
        clause = f"CONTEXT - Established Characters/Setting: {characters}."
    return fill(NARRATIVE_TPLS[kind], context=context, characters_clause=clause).strip()


def strip_quotes(text: str) -> str:
    return re.sub(r"^[\"']|[\"']$", "", text.strip())

# ------------------ UTILITIES ---------------------


def to_data_uri(img_bytes: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(img_bytes).decode('utf-8')}"


def data_uri_to_bytes(ref: str) -> bytes:
    """Decode an image reference; the `data:...;base64,` prefix is optional."""
    payload = ref.split("base64,", 1)[1] if "base64," in ref else ref
    return base64.b64decode(payload)


def image_bytes_to_pil(b: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(b))
    img.load()
    return img


def mime_for(img: Image.Image) -> str:
    return Image.MIME.get(img.format or "", "image/png")


def optimize_image_for_api(img_bytes: bytes, max_size: int = UPLOAD_MAX_SIZE) -> bytes:
    """Compress image to reduce API payload size"""
    img = image_bytes_to_pil(img_bytes)
    if img.size[0] > max_size or img.size[1] > max_size:
        img.thumbnail((max_size, max_size), Image.LANCZOS)

    output = io.BytesIO()
    if img.mode in ('RGBA', 'LA', 'P'):
        background = Image.new('RGB', img.size, (255, 255, 255))
        if img.mode == 'P':
            img = img.convert('RGBA')
        background.paste(img, mask=img.split()[-1])
        img = background
    elif img.mode != 'RGB':
        img = img.convert('RGB')
    img.save(output, format='JPEG', quality=85, optimize=True)
    return output.getvalue()


def checked_data_uri(img_bytes: Optional[bytes], what: str) -> str:
    """Validate provider output and wrap it as a data URI."""
    if not img_bytes:
        raise GenerationError(f"No image data found in {what} response")
    try:
        img = image_bytes_to_pil(img_bytes)
    except (UnidentifiedImageError, OSError) as e:
        raise GenerationError(f"Malformed image in {what} response: {e}") from e
    logger.debug("%s image: %s %s", what, img.size, img.mode)
    return to_data_uri(img_bytes, mime_for(img))


# --- Simple prompt logger (log + memory) ---


class PromptLogger:
    def __init__(self, limit: int = PROMPT_LOG_LIMIT):
        self.limit = limit
        self.entries: List[Dict[str, str]] = []

    def log(self, title: str, content: str):
        self.entries.append({"title": title, "content": content.strip()})
        del self.entries[:-self.limit]
        if PRINT_PROMPTS:
            logger.info("\n===== %s =====\n%s\n", title, content.strip())

# ------------------ GENAI WRAPPER ----------------


class GAIC:
    """Gateway to the generative text/image providers.

    Every public method is a single request/response round trip. Failures of
    any kind come out as GenerationError; nothing is retried or cached.
    """

    def __init__(self, api_key: Optional[str] = None, image_provider: str = IMAGE_PROVIDER,
                 prompt_log: Optional[PromptLogger] = None):
        api_key = api_key or API_KEY
        if not api_key:
            raise RuntimeError("Missing GEMINI_API_KEY in .env")
        if image_provider not in ("gemini", "fal"):
            raise ValueError(f"Image provider {image_provider} not supported.")
        if image_provider == "fal":
            if not FAL_API_KEY:
                raise RuntimeError("Missing FAL_API_KEY in .env")
            os.environ["FAL_KEY"] = FAL_API_KEY
        self.client = genai.Client(api_key=api_key)
        self.image_provider = image_provider
        self.prompt_log = prompt_log or PromptLogger()

    # Text (Gemini 2.5)
    def generate_text(self, prompt: str, model: str = TEXT_MODEL) -> str:
        self.prompt_log.log("TEXT_PROMPT", prompt)
        try:
            resp = self.client.models.generate_content(
                model=model, contents=prompt)
        except Exception as e:
            logger.error("Text generation failed: %s", e)
            raise GenerationError(f"Text generation failed: {e}") from e
        if getattr(resp, "text", ""):
            return resp.text.strip()
        out = []
        for c in getattr(resp, "candidates", None) or []:
            content = getattr(c, "content", None)
            for p in getattr(content, "parts", None) or []:
                if getattr(p, "text", None):
                    out.append(p.text)
        text = "\n".join(out).strip()
        if not text:
            raise GenerationError("Text model returned an empty response")
        return text

    def generate_narrative(self, kind: NarrativeKind, context: str, character_context: str = "") -> str:
        prompt = build_narrative_prompt(kind, context, character_context)
        return strip_quotes(self.generate_text(prompt))

    def generate_image(self, prompt: str, aspect_ratio: AspectRatio = "1:1") -> str:
        """Text-to-image. Returns a data URI."""
        self.prompt_log.log(f"IMAGE_PROMPT [{aspect_ratio}]", prompt)
        if self.image_provider == "fal":
            return self._fal_image(FAL_IMAGE_MODEL, {
                "prompt": prompt,
                "aspect_ratio": aspect_ratio,
            }, "generate")
        try:
            response = self.client.models.generate_images(
                model=IMAGEN_MODEL,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=1,
                    output_mime_type="image/jpeg",
                    aspect_ratio=aspect_ratio,
                ),
            )
        except Exception as e:
            logger.error("Imagen call failed: %s", e)
            raise GenerationError(f"Image generation failed: {e}") from e

        generated = getattr(response, "generated_images", None) or []
        image = getattr(generated[0], "image", None) if generated else None
        return checked_data_uri(getattr(image, "image_bytes", None), "generate")

    def generate_image_from_reference(self, reference: str, prompt: str) -> str:
        """Sketch-to-image: keep the reference's composition, apply the prompt."""
        instruction = build_sketch_prompt(prompt)
        self.prompt_log.log("SKETCH_PROMPT", instruction)
        return self._image_to_image(reference, instruction, "sketch")

    def edit_image(self, source: str, instruction: str) -> str:
        self.prompt_log.log("EDIT_PROMPT", instruction)
        return self._image_to_image(source, instruction, "edit")

    def _image_to_image(self, reference: str, instruction: str, what: str) -> str:
        try:
            ref_bytes = optimize_image_for_api(data_uri_to_bytes(reference))
        except (ValueError, UnidentifiedImageError, OSError) as e:
            raise GenerationError(f"Unreadable {what} source image: {e}") from e

        if self.image_provider == "fal":
            return self._fal_image(FAL_EDIT_MODEL, {
                "prompt": instruction,
                "image_urls": [to_data_uri(ref_bytes, "image/jpeg")],
            }, what)

        try:
            response = self.client.models.generate_content(
                model=IMAGE_EDIT_MODEL,
                contents=[
                    types.Part.from_bytes(data=ref_bytes, mime_type="image/jpeg"),
                    instruction,
                ],
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE"]),
            )
        except Exception as e:
            logger.error("Gemini %s call failed: %s", what, e)
            raise GenerationError(f"Image {what} failed: {e}") from e

        candidates = getattr(response, "candidates", None) or []
        content = getattr(candidates[0], "content", None) if candidates else None
        parts = getattr(content, "parts", None)
        if not parts:
            raise GenerationError(f"No content in {what} response")
        image_bytes = None
        for part in parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                image_bytes = inline.data
                break
        return checked_data_uri(image_bytes, what)

    def _fal_image(self, model: str, arguments: dict, what: str) -> str:
        try:
            result = fal_client.subscribe(
                model,
                arguments={**arguments, "num_images": 1, "output_format": "png"},
                with_logs=True,
            )
        except Exception as e:
            logger.error("Fal %s call failed: %s", what, e)
            raise GenerationError(f"Fal image {what} failed: {e}") from e

        images = (result or {}).get("images") or []
        if not images:
            raise GenerationError(f"Fal API returned no images for {what}")
        try:
            response = requests.get(images[0]["url"], timeout=60)
        except (KeyError, requests.RequestException) as e:
            raise GenerationError(f"Failed to download image from Fal: {e}") from e
        if response.status_code != 200:
            raise GenerationError(
                f"Failed to download image from Fal: {response.status_code}")
        return checked_data_uri(response.content, what)
