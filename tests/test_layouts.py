"""Tests for the split-layout resolver and page layout tables."""

from typing import get_args

import pytest

from novelgen import (
    SplitLayout, ComicImage, ComicPanel, SLOT_COUNTS, reconcile_slots, slot_count,
    slot_placement, slot_placements, grid_shape, page_layout, effective_span,
    _check_exhaustive,
)


def filled(n):
    return [ComicImage(url=f"data:image/png;base64,{i}", prompt=f"p{i}") for i in range(n)]


class TestSlotCounts:

    @pytest.mark.parametrize("layout,count", [
        ("SINGLE", 1), ("DOUBLE_V", 2), ("DOUBLE_H", 2), ("TRIPLE_V", 3),
        ("TRIPLE_H", 3), ("BIG_LEFT", 3), ("BIG_RIGHT", 3), ("BIG_TOP", 3),
        ("BIG_BOTTOM", 3), ("QUAD", 4),
    ])
    def test_table(self, layout, count):
        assert slot_count(layout) == count

    def test_every_layout_has_a_count(self):
        assert set(SLOT_COUNTS) == set(get_args(SplitLayout))

    def test_exhaustiveness_check_rejects_missing_tag(self):
        with pytest.raises(RuntimeError, match="missing"):
            _check_exhaustive({"SINGLE": 1}, SplitLayout)


class TestReconcileSlots:

    @pytest.mark.parametrize("start", list(get_args(SplitLayout)))
    @pytest.mark.parametrize("target", list(get_args(SplitLayout)))
    def test_any_transition_matches_table_and_keeps_prefix(self, start, target):
        images = filled(slot_count(start))
        result = reconcile_slots(images, target)

        assert len(result) == slot_count(target)
        kept = min(len(images), len(result))
        assert result[:kept] == images[:kept]
        assert all(not img.url and not img.prompt for img in result[kept:])

    def test_single_to_quad_appends_three_empty_slots(self):
        original = filled(1)
        result = reconcile_slots(original, "QUAD")

        assert len(result) == 4
        assert result[0] is original[0]
        new_ids = {img.id for img in result[1:]}
        assert len(new_ids) == 3
        assert original[0].id not in new_ids
        assert all(img.url == "" and img.prompt == "" for img in result[1:])

    def test_quad_to_single_discards_the_rest(self, caplog):
        original = filled(4)
        result = reconcile_slots(original, "SINGLE")

        assert result == original[:1]
        assert "drops 3 filled slot(s)" in caplog.text

    def test_input_list_is_not_mutated(self):
        original = filled(2)
        reconcile_slots(original, "QUAD")
        reconcile_slots(original, "SINGLE")
        assert len(original) == 2


class TestPlacements:

    def test_big_left_first_slot_spans_rows(self):
        hint = slot_placement("BIG_LEFT", 0)
        assert hint.rowSpan == 2 and hint.colSpan == 1

    def test_big_right_last_slot_fills_right_column(self):
        hint = slot_placement("BIG_RIGHT", 2)
        assert (hint.column, hint.row, hint.rowSpan) == (2, 1, 2)

    def test_big_top_and_bottom_span_columns(self):
        assert slot_placement("BIG_TOP", 0).colSpan == 2
        assert slot_placement("BIG_BOTTOM", 2).colSpan == 2
        assert slot_placement("BIG_BOTTOM", 0).colSpan == 1

    def test_symmetric_layouts_have_no_spans(self):
        for hint in slot_placements("QUAD"):
            assert (hint.colSpan, hint.rowSpan, hint.column, hint.row) == (1, 1, None, None)

    def test_grid_shapes(self):
        assert grid_shape("DOUBLE_V") == (2, 1)
        assert grid_shape("TRIPLE_H") == (1, 3)
        assert grid_shape("BIG_TOP") == (2, 2)


class TestPageLayout:

    def test_gutter_and_padding(self):
        layout = page_layout("DYNAMIC", "LARGE")
        assert (layout.columns, layout.gapPx, layout.paddingPx) == (4, 48, 32)

    def test_no_gutter_drops_padding(self):
        assert page_layout("STANDARD", "NONE").paddingPx == 0

    def test_vertical_pages_stack_and_keep_padding(self):
        layout = page_layout("VERTICAL", "NONE")
        assert layout.stacked is True
        assert layout.paddingPx == 32

    def test_span_is_clamped_to_page_columns(self):
        panel = ComicPanel(colSpan=6)
        assert effective_span(panel, "CLASSIC") == 2
        assert effective_span(panel, "STORYBOARD") == 6
