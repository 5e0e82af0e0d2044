# studio.py
import logging
import threading
from typing import List, Optional, Callable, TypeVar, get_args

from pydantic import BaseModel, Field

from novelgen import (
    GAIC, ComicImage, ComicPanel, Character, SplitLayout, AspectRatio, OverlayType,
    GenerationMode, ComicStyle, GridLayout, GutterSize, NarrativeKind, STYLE_PROMPTS,
    GRID_COLUMNS, GUTTER_PX, SLOT_COUNTS, InvalidTargetError, StudioBusyError,
    PanelNotFoundError, CharacterNotFoundError, reconcile_slots, character_context,
    PromptLogger, build_generate_prompt, build_edit_prompt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ------------------ STATE -------------------------


class LoadingState(BaseModel):
    isLoading: bool = False
    message: str = ""


class ComicState(BaseModel):
    panels: List[ComicPanel] = Field(default_factory=list)
    selectedPanelId: Optional[str] = None
    activeSlotId: Optional[str] = None
    mode: GenerationMode = "CREATE"
    gridLayout: GridLayout = "STANDARD"
    gutterSize: GutterSize = "MEDIUM"
    characters: List[Character] = Field(default_factory=list)
    # text left in the prompt box by story assist
    draftPrompt: str = ""

    def find_panel(self, panel_id: Optional[str]) -> Optional[ComicPanel]:
        for p in self.panels:
            if p.id == panel_id:
                return p
        return None

    @property
    def selected_panel(self) -> Optional[ComicPanel]:
        return self.find_panel(self.selectedPanelId)

    @property
    def active_image(self) -> Optional[ComicImage]:
        panel = self.selected_panel
        return panel.find_image(self.activeSlotId) if panel else None

# ------------------ TRANSITIONS -------------------
# Every function below returns a new ComicState and leaves its input untouched.


def _require_panel(state: ComicState, panel_id: str) -> ComicPanel:
    panel = state.find_panel(panel_id)
    if panel is None:
        raise PanelNotFoundError(f"Panel '{panel_id}' not found")
    return panel


def _replace_panel(state: ComicState, panel_id: str, **changes) -> ComicState:
    panel = _require_panel(state, panel_id)
    # model_copy(update=...) does not validate
    updated = ComicPanel.model_validate({**panel.model_dump(), **changes})
    panels = [updated if p.id == panel_id else p for p in state.panels]
    return state.model_copy(update={"panels": panels})


def _check_text(value, what: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"{what} must be a string, got {type(value).__name__}")


def _check_tag(value: str, tags, what: str) -> None:
    _check_text(value, what)
    if value not in (tags if isinstance(tags, dict) else get_args(tags)):
        raise ValueError(f"Unknown {what}: {value}")


def next_mode(mode: GenerationMode, slot_has_image: bool) -> GenerationMode:
    """Mode after a slot is selected."""
    if not slot_has_image:
        return "CREATE"
    if mode == "CREATE":
        return "EDIT"
    return mode


def create_panel(state: ComicState, image_ref: str, prompt: str) -> ComicState:
    panel = ComicPanel(images=[ComicImage(url=image_ref, prompt=prompt)])
    return state.model_copy(update={"panels": state.panels + [panel]})


def fill_slot(state: ComicState, panel_id: str, slot_id: str, image_ref: str,
              prompt: Optional[str] = None) -> ComicState:
    """Write an image into the active slot; any other target is ignored.

    prompt=None keeps the slot's current prompt.
    """
    if state.selectedPanelId != panel_id or state.activeSlotId != slot_id:
        return state
    panel = state.find_panel(panel_id)
    if panel is None or panel.find_image(slot_id) is None:
        return state
    changes = {"url": image_ref}
    if prompt is not None:
        changes["prompt"] = prompt
    images = [img.model_copy(update=changes) if img.id == slot_id else img
              for img in panel.images]
    return _replace_panel(state, panel_id, images=images)


def set_caption(state: ComicState, panel_id: str, caption: str) -> ComicState:
    return _replace_panel(state, panel_id, caption=caption)


def set_overlay(state: ComicState, panel_id: str, overlay: OverlayType) -> ComicState:
    _check_tag(overlay, OverlayType, "overlay type")
    return _replace_panel(state, panel_id, overlayType=overlay)


def set_span(state: ComicState, panel_id: str, span: int) -> ComicState:
    if isinstance(span, bool) or not isinstance(span, int) or not 1 <= span <= 6:
        raise ValueError(f"Column span must be an integer from 1 to 6, got {span!r}")
    return _replace_panel(state, panel_id, colSpan=span)


def set_aspect_ratio(state: ComicState, panel_id: str, aspect_ratio: AspectRatio) -> ComicState:
    _check_tag(aspect_ratio, AspectRatio, "aspect ratio")
    return _replace_panel(state, panel_id, aspectRatio=aspect_ratio)


def set_layout(state: ComicState, panel_id: str, layout: SplitLayout) -> ComicState:
    _check_tag(layout, SLOT_COUNTS, "split layout")
    panel = _require_panel(state, panel_id)
    images = reconcile_slots(panel.images, layout)
    new_state = _replace_panel(state, panel_id, splitLayout=layout, images=images)
    # the active slot may have been truncated away
    if (new_state.selectedPanelId == panel_id and new_state.activeSlotId
            and not any(img.id == new_state.activeSlotId for img in images)):
        new_state = new_state.model_copy(update={"activeSlotId": images[0].id})
    return new_state


def delete_panel(state: ComicState, panel_id: str) -> ComicState:
    _require_panel(state, panel_id)
    changes = {"panels": [p for p in state.panels if p.id != panel_id]}
    if state.selectedPanelId == panel_id:
        changes.update(selectedPanelId=None, activeSlotId=None)
    return state.model_copy(update=changes)


def select_panel(state: ComicState, panel_id: str) -> ComicState:
    panel = _require_panel(state, panel_id)
    if state.selectedPanelId == panel_id:
        return state
    changes = {"selectedPanelId": panel_id}
    if panel.images:
        changes["activeSlotId"] = panel.images[0].id
    if state.mode != "STORY":
        changes["mode"] = "EDIT"
    return state.model_copy(update=changes)


def select_slot(state: ComicState, panel_id: str, slot_id: str) -> ComicState:
    panel = _require_panel(state, panel_id)
    image = panel.find_image(slot_id)
    if image is None:
        raise PanelNotFoundError(f"Slot '{slot_id}' not found in panel '{panel_id}'")
    return state.model_copy(update={
        "selectedPanelId": panel_id,
        "activeSlotId": slot_id,
        "mode": next_mode(state.mode, image.filled),
    })


def set_mode(state: ComicState, mode: GenerationMode) -> ComicState:
    _check_tag(mode, GenerationMode, "mode")
    return state.model_copy(update={"mode": mode})


def set_page_layout(state: ComicState, grid: Optional[GridLayout] = None,
                    gutter: Optional[GutterSize] = None) -> ComicState:
    changes = {}
    if grid is not None:
        _check_tag(grid, GRID_COLUMNS, "grid layout")
        changes["gridLayout"] = grid
    if gutter is not None:
        _check_tag(gutter, GUTTER_PX, "gutter size")
        changes["gutterSize"] = gutter
    return state.model_copy(update=changes)


def set_draft_prompt(state: ComicState, text: str) -> ComicState:
    return state.model_copy(update={"draftPrompt": text})


def add_character(state: ComicState, name: str = "", description: str = "") -> ComicState:
    character = Character(name=name, description=description)
    return state.model_copy(update={"characters": state.characters + [character]})


def update_character(state: ComicState, character_id: str, name: Optional[str] = None,
                     description: Optional[str] = None) -> ComicState:
    if not any(c.id == character_id for c in state.characters):
        raise CharacterNotFoundError(f"Character '{character_id}' not found")
    changes = {k: v for k, v in (("name", name), ("description", description)) if v is not None}
    characters = [Character.model_validate({**c.model_dump(), **changes}) if c.id == character_id else c
                  for c in state.characters]
    return state.model_copy(update={"characters": characters})


def remove_character(state: ComicState, character_id: str) -> ComicState:
    if not any(c.id == character_id for c in state.characters):
        raise CharacterNotFoundError(f"Character '{character_id}' not found")
    return state.model_copy(update={
        "characters": [c for c in state.characters if c.id != character_id]})


def last_panel_prompt(state: ComicState) -> str:
    """Prompt of the last slot with one, in the last panel."""
    if not state.panels:
        return ""
    for img in reversed(state.panels[-1].images):
        if img.prompt and img.prompt.strip():
            return img.prompt
    return ""

# ------------------ CONTROLLER --------------------


class Studio:
    """Owns the comic state, the busy flag and the gateway.

    Requests run one at a time; state is only replaced after a successful
    provider response.
    """

    def __init__(self, gateway: Optional[GAIC] = None,
                 gateway_factory: Callable[..., GAIC] = GAIC):
        self.state = ComicState()
        self.loading = LoadingState()
        self.prompt_log = getattr(gateway, "prompt_log", None) or PromptLogger()
        self._gateway = gateway
        self._gateway_factory = gateway_factory
        self._busy = threading.Lock()
        # held only while a transition runs, never across a gateway call
        self._state_lock = threading.Lock()

    @property
    def gateway(self) -> GAIC:
        # built on first use so the app starts without provider keys
        if self._gateway is None:
            self._gateway = self._gateway_factory(prompt_log=self.prompt_log)
        return self._gateway

    def apply(self, transition: Callable[..., ComicState], *args, **kwargs) -> ComicState:
        with self._state_lock:
            self.state = transition(self.state, *args, **kwargs)
            return self.state

    def _run(self, message: str, fn: Callable[[], T]) -> T:
        if not self._busy.acquire(blocking=False):
            raise StudioBusyError("Another request is still in progress")
        self.loading = LoadingState(isLoading=True, message=message)
        try:
            return fn()
        finally:
            self.loading = LoadingState()
            self._busy.release()

    def generate(self, prompt: str, style: ComicStyle = "MODERN",
                 sketch: Optional[str] = None) -> Optional[ComicState]:
        """Fill the active slot, or append a new panel when nothing is selected."""
        _check_text(prompt, "prompt")
        if sketch is not None:
            _check_text(sketch, "sketch")
        if not prompt.strip():
            return None
        _check_tag(style, STYLE_PROMPTS, "style")
        state = self.state
        full_prompt = build_generate_prompt(prompt, style, state.characters)
        target = state.selected_panel
        slot_id = state.activeSlotId if target is not None else None
        aspect_ratio = target.aspectRatio if target is not None and slot_id else "1:1"

        if sketch:
            message = "Transforming sketch..."
        else:
            message = f"Generating {style.lower().replace('_', ' ')} art..."

        def call() -> str:
            if sketch:
                return self.gateway.generate_image_from_reference(sketch, full_prompt)
            return self.gateway.generate_image(full_prompt, aspect_ratio)

        image_ref = self._run(message, call)
        if target is not None and slot_id:
            logger.info("Filled slot %s of panel %s", slot_id, target.id)
            return self.apply(fill_slot, target.id, slot_id, image_ref, prompt.strip())
        new_state = self.apply(create_panel, image_ref, prompt.strip())
        logger.info("Created panel %s", new_state.panels[-1].id)
        return new_state

    def edit(self, instruction: str) -> Optional[ComicState]:
        _check_text(instruction, "prompt")
        if not instruction.strip():
            return None
        state = self.state
        panel = state.selected_panel
        image = state.active_image
        if panel is None or image is None or not image.filled:
            raise InvalidTargetError("Please select a slot with an image to edit.")
        full_prompt = build_edit_prompt(instruction, state.characters)
        image_ref = self._run("Editing panel...",
                              lambda: self.gateway.edit_image(image.url, full_prompt))
        logger.info("Edited slot %s of panel %s", image.id, panel.id)
        return self.apply(fill_slot, panel.id, image.id, image_ref)

    def assist(self, kind: NarrativeKind, context: str = "") -> str:
        _check_tag(kind, NarrativeKind, "narrative kind")
        _check_text(context, "context")
        state = self.state
        panel = state.selected_panel
        if kind == "DIALOGUE":
            if panel is None:
                raise InvalidTargetError("Select a panel to write a caption for.")
            image = state.active_image
            context = image.prompt if image else (panel.images[0].prompt if panel.images else "")
        elif kind == "NEXT_PANEL":
            if not state.panels:
                raise InvalidTargetError("Create a panel before continuing the story.")
            context = last_panel_prompt(state) or context

        roster = character_context(state.characters)
        text = self._run("Consulting AI Storywriter...",
                         lambda: self.gateway.generate_narrative(kind, context, roster))
        if kind == "DIALOGUE":
            self.apply(set_caption, panel.id, text)
        else:
            self.apply(set_draft_prompt, text)
            self.apply(set_mode, "CREATE")
        return text
