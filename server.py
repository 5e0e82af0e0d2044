import os
import logging
from typing import Optional, Dict, Any

from flask import Flask, request, jsonify
from dotenv import load_dotenv

from novelgen import (
    StudioError, GenerationError, InvalidTargetError, StudioBusyError,
    PanelNotFoundError, CharacterNotFoundError, page_layout, slot_placements,
    grid_shape, effective_span,
)
from studio import (
    Studio, set_caption, set_overlay, set_span, set_layout, set_aspect_ratio,
    delete_panel, select_panel, select_slot, set_mode, set_page_layout,
    add_character, update_character, remove_character, last_panel_prompt,
)

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidTargetError: 400,
    PanelNotFoundError: 404,
    CharacterNotFoundError: 404,
    StudioBusyError: 409,
    GenerationError: 502,
}


def snapshot(studio: Studio) -> Dict[str, Any]:
    """Everything a view needs to draw the page."""
    state = studio.state
    data = state.model_dump()
    for panel, out in zip(state.panels, data["panels"]):
        cols, rows = grid_shape(panel.splitLayout)
        out["grid"] = {"columns": cols, "rows": rows}
        out["placements"] = [p.model_dump() for p in slot_placements(panel.splitLayout)]
        out["effectiveSpan"] = effective_span(panel, state.gridLayout)
    data["page"] = page_layout(state.gridLayout, state.gutterSize).model_dump()
    data["loading"] = studio.loading.model_dump()
    data["lastPanelPrompt"] = last_panel_prompt(state)
    return data


def create_app(studio: Optional[Studio] = None) -> Flask:
    app = Flask(__name__, static_folder=None)
    studio = studio or Studio()
    app.extensions["studio"] = studio

    @app.errorhandler(StudioError)
    def handle_studio_error(e: StudioError):
        status = next((code for cls, code in ERROR_STATUS.items()
                       if isinstance(e, cls)), 500)
        if status >= 500:
            logger.error("Request failed: %s", e)
        return jsonify({"error": str(e)}), status

    @app.errorhandler(ValueError)
    def handle_bad_value(e: ValueError):
        return jsonify({"error": str(e)}), 400

    def body() -> Dict[str, Any]:
        return request.get_json(force=True, silent=True) or {}

    def state_response():
        return jsonify(snapshot(studio))

    @app.route("/api/state")
    def api_state():
        return state_response()

    @app.route("/api/prompts")
    def api_prompts():
        return jsonify({"prompts": studio.prompt_log.entries})

    @app.route("/api/generate", methods=["POST"])
    def api_generate():
        data = body()
        result = studio.generate(data.get("prompt", ""), data.get("style", "MODERN"),
                                 data.get("sketch") or None)
        if result is None:
            return jsonify({"ignored": True})
        return state_response()

    @app.route("/api/edit", methods=["POST"])
    def api_edit():
        result = studio.edit(body().get("prompt", ""))
        if result is None:
            return jsonify({"ignored": True})
        return state_response()

    @app.route("/api/assist", methods=["POST"])
    def api_assist():
        data = body()
        kind = data.get("type")
        if not kind:
            return jsonify({"error": "Missing type"}), 400
        text = studio.assist(kind, data.get("context", ""))
        return jsonify({"text": text, "state": snapshot(studio)})

    @app.route("/api/select_panel", methods=["POST"])
    def api_select_panel():
        panel_id = body().get("panel_id")
        if not panel_id:
            return jsonify({"error": "Missing panel_id"}), 400
        studio.apply(select_panel, panel_id)
        return state_response()

    @app.route("/api/select_slot", methods=["POST"])
    def api_select_slot():
        data = body()
        panel_id, slot_id = data.get("panel_id"), data.get("slot_id")
        if not panel_id or not slot_id:
            return jsonify({"error": "Missing panel_id or slot_id"}), 400
        studio.apply(select_slot, panel_id, slot_id)
        return state_response()

    @app.route("/api/mode", methods=["POST"])
    def api_mode():
        studio.apply(set_mode, body().get("mode"))
        return state_response()

    @app.route("/api/page_layout", methods=["POST"])
    def api_page_layout():
        data = body()
        studio.apply(set_page_layout, data.get("grid_layout"), data.get("gutter_size"))
        return state_response()

    panel_fields = {
        "caption": (set_caption, "caption"),
        "overlay": (set_overlay, "overlay_type"),
        "span": (set_span, "span"),
        "layout": (set_layout, "split_layout"),
        "aspect_ratio": (set_aspect_ratio, "aspect_ratio"),
    }

    @app.route("/api/panels/<panel_id>/<field>", methods=["POST"])
    def api_update_panel(panel_id: str, field: str):
        if field not in panel_fields:
            return jsonify({"error": f"Unknown panel field '{field}'"}), 404
        transition, key = panel_fields[field]
        data = body()
        if key not in data:
            return jsonify({"error": f"Missing {key}"}), 400
        studio.apply(transition, panel_id, data[key])
        return state_response()

    @app.route("/api/panels/<panel_id>", methods=["DELETE"])
    def api_delete_panel(panel_id: str):
        studio.apply(delete_panel, panel_id)
        return state_response()

    @app.route("/api/characters", methods=["POST"])
    def api_add_character():
        data = body()
        studio.apply(add_character, data.get("name", ""), data.get("description", ""))
        return state_response()

    @app.route("/api/characters/<character_id>", methods=["PATCH"])
    def api_update_character(character_id: str):
        data = body()
        studio.apply(update_character, character_id,
                     data.get("name"), data.get("description"))
        return state_response()

    @app.route("/api/characters/<character_id>", methods=["DELETE"])
    def api_remove_character(character_id: str):
        studio.apply(remove_character, character_id)
        return state_response()

    return app


def main():
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("DEBUG", "0") == "1" else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    app.run(host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "5001")),
            debug=os.getenv("DEBUG", "0") == "1", threaded=True)


if __name__ == "__main__":
    main()
