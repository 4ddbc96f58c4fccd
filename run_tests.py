#!/usr/bin/env python3
"""
Unit Tests for the CalloutRay Overlay Engine

Covers the behaviors the viewer depends on:
A. Coordinate transform (normalized -> media -> screen and back)
B. Temporal filter (entity flash window, live staleness, detail budget)
C. Layout solver (sides, overlap-free convergence, budget, idempotence)
D. Connector routing
E. Interaction (zoom clamp, pan, pinch, reset)
F. Render loop scheduling and compositing
G. Input sanitizing, config overrides and the live poller
"""

import sys
import os
import json
import math
import time
import itertools
import numpy as np

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from calloutray.config import OverlayConfig
from calloutray.entities import (
    ZERO_BOX,
    AnalysisFormatError,
    Detail,
    Entity,
    LiveDetection,
    parse_analysis_result,
    parse_live_detections,
    parse_timestamp,
)
from calloutray.transform import (
    box_to_media,
    is_valid_box,
    media_to_normalized,
    media_to_screen,
    normalized_to_media,
    screen_to_media,
    view_matrix,
)
from calloutray.temporal import TemporalFilter
from calloutray.layout import LABEL_PADDING, PALETTE, LayoutSolver, MarginBand, Side, margin_band, solve_1d_layout
from calloutray.connectors import route_connector
from calloutray.interaction import InteractionController, InteractionMode, Panning, Pinching, ViewState
from calloutray.annotation_layer import FrameInput, OverlayRenderer
from calloutray.render_loop import FrameScheduler, RenderLoop
from calloutray.video_pipeline import MediaSampler, StaticImageSampler, VideoFileSampler
from calloutray.ai_analyzer import AnalysisClient, LiveDetectionPoller


def make_entity(eid, box, timestamp=None, n_details=0, label=None):
    details = tuple(
        Detail(name=f"part {i}", point=(box[0], box[1]), description="desc")
        for i in range(n_details)
    )
    return Entity(id=eid, label=label or eid, box=box, timestamp=timestamp, details=details)


class FakeVideo(MediaSampler):
    """Deterministic video: fixed frame, externally driven playhead."""

    is_video = True

    def __init__(self, size=(200, 100), t=0.0, ready=True, playing=True):
        self.size = size
        self.t = t
        self.ready = ready
        self.playing = playing
        self.frame = np.full((size[1], size[0], 3), (0, 0, 255), dtype=np.uint8)

    @property
    def dimensions(self):
        return self.size

    @property
    def current_time(self):
        return self.t

    @property
    def is_active(self):
        return self.playing

    def read_frame(self):
        return self.frame if self.ready else None


class PendingImage(StaticImageSampler):
    """Still image whose pixels are not decoded yet."""

    def __init__(self, size=(200, 100)):
        super().__init__(np.zeros((size[1], size[0], 3), dtype=np.uint8))
        self.ready = False

    def read_frame(self):
        return self._frame if self.ready else None


def test_coordinate_transform():
    """
    Test Case A: Coordinate Transform

    Assertions:
    - Normalized points and boxes scale with media size
    - The view matrix follows dpr * (center + scale * (offset + p - media_center))
    - screen_to_media inverts media_to_screen
    - Degenerate, inverted and out-of-range boxes are invalid
    """
    print("\n" + "="*60)
    print("TEST A: Coordinate Transform")
    print("="*60)

    assert normalized_to_media(500, 250, 1920, 1080) == (960.0, 270.0)
    assert box_to_media((100, 200, 300, 400), 1000, 500) == (200.0, 50.0, 400.0, 150.0)

    for x, y in [(0, 0), (333.3, 666.7), (1000, 1000), (12.5, 987.25)]:
        mx, my = normalized_to_media(x, y, 1366, 767)
        nx, ny = media_to_normalized(mx, my, 1366, 767)
        assert math.isclose(nx, x, abs_tol=1e-9) and math.isclose(ny, y, abs_tol=1e-9)

    view = ViewState(scale=2.0, offset=(10.0, -5.0))
    matrix = view_matrix(view, (800, 600), (1000, 500), dpr=1.5)
    sx, sy = media_to_screen(matrix, 500, 250)
    print(f"  Media center -> screen ({sx:.2f}, {sy:.2f})")
    assert math.isclose(sx, 630.0) and math.isclose(sy, 435.0)

    for x, y in [(0, 0), (123.4, 56.7), (1000, 500), (-350, 900)]:
        mx, my = screen_to_media(matrix, *media_to_screen(matrix, x, y))
        assert math.isclose(mx, x, abs_tol=1e-9) and math.isclose(my, y, abs_tol=1e-9)

    assert not is_valid_box(ZERO_BOX)
    assert not is_valid_box((10, 10, 5, 20))
    assert not is_valid_box((float("nan"), 0, 10, 10))
    assert not is_valid_box((-1, 0, 10, 10))
    assert not is_valid_box(None)
    assert is_valid_box((0, 0, 1000, 1000))

    print("\n✓ TEST A PASSED: Coordinate Transform")


def test_temporal_visibility():
    """
    Test Case B1: Entity Flash Window

    Assertions:
    - A "00:10" entity shows at 10.0, 9.5 and 10.5, hides at 20.0
    - Still images show every entity regardless of timestamp
    - Scene-persistent entities (no timestamp) always show
    """
    print("\n" + "="*60)
    print("TEST B1: Temporal Visibility")
    print("="*60)

    assert parse_timestamp("00:10") == 10.0
    assert parse_timestamp("1:05") == 65.0
    assert parse_timestamp("01:02:03") == 3723.0
    assert parse_timestamp("soon") is None
    assert parse_timestamp(None) is None

    temporal = TemporalFilter()
    flash = make_entity("flash", (100, 100, 200, 200), timestamp=parse_timestamp("00:10"))
    scene = make_entity("scene", (300, 300, 400, 400))

    for t in (10.0, 9.5, 10.5):
        assert temporal.is_entity_visible(flash, t, is_video=True), f"hidden at {t}"
    assert not temporal.is_entity_visible(flash, 20.0, is_video=True)
    assert not temporal.is_entity_visible(flash, 10.7, is_video=True)
    assert temporal.is_entity_visible(flash, 20.0, is_video=False)

    visible = temporal.visible_entities([flash, scene], 20.0, is_video=True)
    assert [e.id for e in visible] == ["scene"]

    wide = TemporalFilter(OverlayConfig(visibility_window=2.0))
    assert wide.is_entity_visible(flash, 11.5, is_video=True)

    print("\n✓ TEST B1 PASSED: Temporal Visibility")


def test_live_staleness():
    """
    Test Case B2: Live Detection Staleness

    Assertions:
    - A detection captured at 5.0 survives at 5.5 and is dropped at 7.0
    - Unstamped detections and still images are never filtered
    """
    print("\n" + "="*60)
    print("TEST B2: Live Staleness")
    print("="*60)

    temporal = TemporalFilter()
    det = LiveDetection(label="cup", box=(100, 100, 200, 200), capture_timestamp=5.0)
    unstamped = LiveDetection(label="mug", box=(100, 100, 200, 200))

    assert temporal.fresh_detections([det], 5.5, is_video=True) == [det]
    assert temporal.fresh_detections([det], 7.0, is_video=True) == []
    assert temporal.fresh_detections([det, unstamped], 7.0, is_video=True) == [unstamped]
    assert temporal.fresh_detections([det], 7.0, is_video=False) == [det]

    print("\n✓ TEST B2 PASSED: Live Staleness")


def test_detail_budget():
    """
    Test Case B3: Detail Budget

    Assertions:
    - 100 keeps everything
    - Each entity keeps its first max(1, level // 20) details
    - Below 30 only the first max(1, floor(n * level / 30)) entities remain
    """
    print("\n" + "="*60)
    print("TEST B3: Detail Budget")
    print("="*60)

    entities = [make_entity(f"e{i}", (100, 100, 200, 200), n_details=5) for i in range(6)]
    budget = TemporalFilter.apply_detail_budget

    full = budget(entities, 100)
    assert len(full) == 6 and all(len(e.details) == 5 for e in full)

    mid = budget(entities, 50)
    assert len(mid) == 6 and all(len(e.details) == 2 for e in mid)
    assert [d.name for d in mid[0].details] == ["part 0", "part 1"]

    low = budget(entities, 20)
    assert [e.id for e in low] == ["e0", "e1", "e2", "e3"]
    assert all(len(e.details) == 1 for e in low)

    assert len(budget(entities, 29)) == 5
    assert len(budget(entities, 0)) == 1
    assert budget([], 10) == []

    # Originals are immutable and untouched
    assert len(entities[0].details) == 5

    print("\n✓ TEST B3 PASSED: Detail Budget")


def test_layout_sides():
    """
    Test Case C1: Side Assignment and Anchors

    Assertions:
    - Left-half boxes anchor on their left edge, right-half on their right edge
    - Header targets start label_offset outside the media
    - Detail labels start further out than their header
    """
    print("\n" + "="*60)
    print("TEST C1: Layout Sides")
    print("="*60)

    solver = LayoutSolver()
    left = make_entity("left", (100, 100, 300, 300), n_details=1)
    right = make_entity("right", (100, 700, 300, 900))
    center = make_entity("center", (400, 400, 600, 600))

    labels = {label.id: label for label in solver.build_labels([left, right, center], (1000, 1000))}

    head = labels["head_left"]
    assert head.side == Side.LEFT
    assert head.anchor == (100.0, 200.0)
    assert head.target == (-350.0, 200.0)
    assert head.height == 40.0 and head.width == 260.0

    detail = labels["det_left_0"]
    assert detail.side == Side.LEFT
    assert detail.target == (-400.0, 280.0)
    assert detail.anchor == (100.0, 100.0)

    head = labels["head_right"]
    assert head.side == Side.RIGHT
    assert head.anchor == (900.0, 200.0)
    assert head.target[0] == 1350.0

    trio = [make_entity(f"l{i}", (100 + 250 * i, 20 * i, 200 + 250 * i, 450)) for i in range(3)]
    sides = [label.side for label in solver.build_labels(trio, (1000, 1000))]
    assert sides == [Side.LEFT] * 3
    trio = [make_entity(f"r{i}", (100 + 250 * i, 550, 200 + 250 * i, 1000 - 20 * i)) for i in range(3)]
    sides = [label.side for label in solver.build_labels(trio, (1000, 1000))]
    assert sides == [Side.RIGHT] * 3

    # Exactly centered boxes go left
    assert labels["head_center"].side == Side.LEFT

    # Invalid boxes get no label
    broken = make_entity("broken", ZERO_BOX)
    assert solver.build_labels([broken], (1000, 1000)) == []

    print("\n✓ TEST C1 PASSED: Layout Sides")


def _assert_side_ok(labels, band, gap, converged):
    for label in labels:
        assert band.contains(label), f"{label.id} outside band"
    if converged:
        ordered = sorted(labels, key=lambda label: label.target[1])
        for a, b in zip(ordered, ordered[1:]):
            assert b.top - a.bottom >= gap - 1e-5, f"{a.id} overlaps {b.id}"


def test_layout_no_overlap():
    """
    Test Case C2: Overlap-Free Convergence

    Scenario:
    - 60 seeded random scenes with headers and details on both sides

    Assertions:
    - Every label ends inside its margin band
    - Whenever a side reports convergence, no two labels overlap
    - A converged layout is a fixed point of the solver
    """
    print("\n" + "="*60)
    print("TEST C2: Layout Overlap Property")
    print("="*60)

    config = OverlayConfig()
    solver = LayoutSolver(config)
    rng = np.random.default_rng(1234)
    converged_sides = 0

    for scene in range(60):
        entities = []
        for i in range(int(rng.integers(1, 10))):
            y0, x0 = rng.uniform(0, 900, size=2)
            h, w = rng.uniform(10, 100, size=2)
            entities.append(make_entity(
                f"s{scene}_{i}", (y0, x0, y0 + h, x0 + w), n_details=int(rng.integers(0, 3))
            ))

        size = (float(rng.integers(320, 1920)), float(rng.integers(240, 1080)))
        layout = solver.compute(entities, size)
        band = margin_band(size[1], config)

        for side in Side:
            report = layout.reports[side]
            labels = layout.on_side(side)
            assert report.iterations <= config.layout_iterations
            _assert_side_ok(labels, band, config.layout_gap, report.converged)

            if report.converged and labels:
                converged_sides += 1
                before = [label.target for label in labels]
                again = solve_1d_layout(
                    list(labels), band, config.layout_iterations, config.layout_gap
                )
                assert again.converged and again.iterations == 1
                assert [label.target for label in labels] == before, "solver moved a solved layout"

    print(f"  Converged non-empty sides: {converged_sides}")
    assert converged_sides > 0

    print("\n✓ TEST C2 PASSED: Layout Overlap Property")


def test_layout_budget():
    """
    Test Case C3: Iteration Budget

    Assertions:
    - Two stacked labels separate in one pass and report convergence on the next
    - A budget too small for a crowded side reports non-convergence
    - Labels stay in band even when the band cannot hold them all
    """
    print("\n" + "="*60)
    print("TEST C3: Layout Budget")
    print("="*60)

    solver = LayoutSolver()
    pair = [make_entity(f"p{i}", (480, 100, 520, 200)) for i in range(2)]
    layout = solver.compute(pair, (1000, 1000))
    report = layout.reports[Side.LEFT]
    print(f"  Pair: {report}")
    assert report.converged and report.iterations == 2
    a, b = sorted(layout.on_side(Side.LEFT), key=lambda label: label.target[1])
    assert math.isclose(b.target[1] - a.target[1], 50.0)
    assert layout.reports[Side.RIGHT].converged and layout.reports[Side.RIGHT].iterations == 0

    crowd = [make_entity(f"c{i}", (480, 100, 520, 200)) for i in range(10)]
    tight = LayoutSolver(OverlayConfig(layout_iterations=1))
    report = tight.compute(crowd, (1000, 1000)).reports[Side.LEFT]
    print(f"  Crowd, 1 pass: {report}")
    assert not report.converged and report.iterations == 1

    # 10 labels of 40px + gaps cannot fit into a 100px band
    band = MarginBand(0.0, 100.0)
    labels = solver.build_labels(crowd, (1000, 1000))
    report = solve_1d_layout(labels, band, iterations=20)
    assert not report.converged and report.iterations == 20
    _assert_side_ok(labels, band, 10.0, converged=False)

    print("\n✓ TEST C3 PASSED: Layout Budget")


def test_connector_geometry():
    """
    Test Case D: Connector Routing

    Assertions:
    - anchor -> (channel, anchor_y) -> (channel, target_y) -> target
    - Channel sits channel_offset outside the media edge on the label's side
    - Segments alternate horizontal / vertical / horizontal
    """
    print("\n" + "="*60)
    print("TEST D: Connector Geometry")
    print("="*60)

    solver = LayoutSolver()
    entities = [
        make_entity("l", (100, 100, 300, 300), n_details=2),
        make_entity("r", (600, 700, 800, 900)),
    ]
    layout = solver.compute(entities, (1000, 800))

    for label in layout.labels:
        connector = route_connector(label, 1000)
        expected_x = -50.0 if label.side == Side.LEFT else 1050.0
        assert connector.anchor == label.anchor
        assert connector.elbow == (expected_x, label.anchor[1])
        assert connector.points[2] == (expected_x, label.target[1])
        assert connector.end == label.target

        (p0, p1), (p2, p3), (p4, p5) = connector.segments()
        assert p0[1] == p1[1] and p2[0] == p3[0] and p4[1] == p5[1]

    print("\n✓ TEST D PASSED: Connector Geometry")


def test_zoom_clamp():
    """
    Test Case E1: Zoom Limits

    Assertions:
    - Direct zoom clamps 20 -> 8.0 and 0.001 -> 0.05
    - Wheel zoom follows scale - dy * 0.001 and respects the same bounds
    - Pinch scales by finger distance ratio, lifting a finger ends it
    """
    print("\n" + "="*60)
    print("TEST E1: Zoom Clamp")
    print("="*60)

    controller = InteractionController()
    assert controller.view.scale == 0.45

    controller.zoom_to(20)
    assert controller.view.scale == 8.0
    controller.zoom_to(0.001)
    assert controller.view.scale == 0.05

    controller.reset()
    controller.wheel(100)
    assert math.isclose(controller.view.scale, 0.35)
    controller.wheel(-100000)
    assert controller.view.scale == 8.0
    controller.wheel(100000)
    assert controller.view.scale == 0.05

    controller.reset()
    controller.touch_start([(0, 0), (100, 0)])
    assert controller.mode == InteractionMode.PINCHING
    assert controller.gesture == Pinching(initial_distance=100.0, initial_scale=0.45)
    controller.touch_move([(0, 0), (200, 0)])
    assert math.isclose(controller.view.scale, 0.9)
    controller.touch_move([(0, 0), (100000, 0)])
    assert controller.view.scale == 8.0

    controller.touch_end([(0, 0)])
    assert controller.mode == InteractionMode.IDLE
    controller.touch_move([(40, 40)])
    assert controller.view.offset == (0.0, 0.0), "remaining finger must not pan"

    # Coincident fingers cannot define a ratio
    controller.touch_start([(5, 5), (5, 5)])
    assert controller.mode == InteractionMode.IDLE

    print("\n✓ TEST E1 PASSED: Zoom Clamp")


def test_pan_and_reset():
    """
    Test Case E2: Pan and Reset

    Assertions:
    - Drag (100,100) -> (150,70) pans by (50,-30)
    - Moves without a press do nothing
    - Reset restores scale 0.45 and zero offset, listeners hear every change
    """
    print("\n" + "="*60)
    print("TEST E2: Pan and Reset")
    print("="*60)

    controller = InteractionController()
    seen = []
    controller.add_listener(seen.append)

    controller.pointer_move(300, 300)
    assert controller.view.offset == (0.0, 0.0) and not seen

    controller.pointer_down(100, 100)
    assert controller.mode == InteractionMode.PANNING
    assert controller.gesture == Panning(drag_anchor=(100.0, 100.0))
    controller.pointer_move(150, 70)
    assert controller.view.offset == (50.0, -30.0)
    assert controller.view.mode == InteractionMode.PANNING
    controller.pointer_up()
    assert controller.mode == InteractionMode.IDLE

    # Second drag continues from the current offset
    controller.pointer_down(0, 0)
    controller.pointer_move(10, 10)
    controller.pointer_leave()
    assert controller.view.offset == (60.0, -20.0)

    controller.zoom_to(2.0)
    count = len(seen)
    controller.reset()
    assert controller.view == ViewState(scale=0.45, offset=(0.0, 0.0), mode=InteractionMode.IDLE)
    assert len(seen) == count + 1

    # Offset is bounded by media size plus margins
    controller.set_content_size(200, 100)
    controller.pointer_down(0, 0)
    controller.pointer_move(5000, -5000)
    assert controller.view.offset == (900.0, -650.0)

    print("\n✓ TEST E2 PASSED: Pan and Reset")


def test_render_loop_still_image():
    """
    Test Case F1: Still Image Scheduling

    Assertions:
    - Nothing is registered before start()
    - A still image renders once per invalidation, then stays idle
    - View changes schedule exactly one redraw
    - Newly published live detections schedule exactly one redraw
    - Media pixels land where the view matrix puts them
    """
    print("\n" + "="*60)
    print("TEST F1: Render Loop - Still Image")
    print("="*60)

    image = np.full((100, 200, 3), (0, 0, 255), dtype=np.uint8)
    scheduler = FrameScheduler(clock=lambda: 0.0)
    controller = InteractionController()
    loop = RenderLoop(scheduler, controller, display_size=(320, 240))
    loop.set_media(StaticImageSampler(image))
    assert scheduler.pending_count == 0

    loop.start()
    assert scheduler.pending_count == 1
    assert scheduler.tick() == 1
    assert loop.frames_rendered == 1
    assert scheduler.pending_count == 0
    assert scheduler.tick() == 0

    canvas = loop.snapshot()
    assert canvas.shape == (240, 320, 3)
    assert tuple(canvas[110, 150]) == (0, 0, 255), "media pixel"
    assert tuple(canvas[5, 5]) == (255, 255, 255), "empty canvas"

    controller.zoom_to(1.0)
    controller.zoom_to(1.5)
    assert scheduler.pending_count == 1
    scheduler.tick()
    assert loop.frames_rendered == 2

    # New live detections redraw a still image without any view change
    published = {"latest": ()}
    loop.set_live_source(lambda: published["latest"])
    scheduler.tick()
    assert loop.frames_rendered == 3
    loop.refresh_live()
    assert scheduler.pending_count == 0, "unchanged detections must not redraw"

    published["latest"] = (LiveDetection("cup", (100, 100, 400, 400)),)
    loop.refresh_live()
    assert scheduler.pending_count == 1
    scheduler.tick()
    assert loop.frames_rendered == 4
    loop.refresh_live()
    assert scheduler.pending_count == 0

    loop.stop()
    controller.zoom_to(2.0)
    assert scheduler.pending_count == 0

    print("\n✓ TEST F1 PASSED: Render Loop - Still Image")


def test_render_loop_cancellation():
    """
    Test Case F2: Video Scheduling and Cancellation

    Assertions:
    - Video re-registers every frame
    - stop(), media change and leaving running() never leave a stale registration
    """
    print("\n" + "="*60)
    print("TEST F2: Render Loop - Cancellation")
    print("="*60)

    scheduler = FrameScheduler(clock=lambda: 0.0)
    loop = RenderLoop(scheduler, InteractionController(), display_size=(160, 120))
    loop.set_media(FakeVideo())
    loop.start()

    for _ in range(3):
        assert scheduler.tick() == 1
        assert scheduler.pending_count == 1
    assert loop.frames_rendered == 3

    loop.stop()
    assert scheduler.pending_count == 0 and not loop.has_pending_frame
    assert scheduler.tick() == 0

    loop.start()
    loop.set_media(FakeVideo(size=(100, 100)))
    assert scheduler.pending_count == 1, "media swap leaked a registration"
    loop.stop()

    with loop.running():
        scheduler.tick()
        assert scheduler.pending_count == 1
    assert scheduler.pending_count == 0
    assert not loop.is_running

    try:
        with loop.running():
            raise RuntimeError("host crashed")
    except RuntimeError:
        pass
    assert scheduler.pending_count == 0

    print("\n✓ TEST F2 PASSED: Render Loop - Cancellation")


def test_render_loop_placeholder():
    """
    Test Case F3: Media Not Ready

    Assertions:
    - A placeholder fills the media rectangle while no frame is decoded
    - The loop keeps retrying until the frame arrives, then goes idle
    """
    print("\n" + "="*60)
    print("TEST F3: Render Loop - Placeholder")
    print("="*60)

    media = PendingImage()
    scheduler = FrameScheduler(clock=lambda: 0.0)
    loop = RenderLoop(scheduler, InteractionController(), display_size=(320, 240))
    loop.set_media(media)

    with loop.running():
        scheduler.tick()
        canvas = loop.snapshot()
        assert tuple(canvas[100, 120]) == (0, 0, 0), "placeholder fill"
        assert tuple(canvas[5, 5]) == (255, 255, 255)
        assert scheduler.pending_count == 1, "still image must retry while loading"

        scheduler.tick()
        assert scheduler.pending_count == 1

        media.ready = True
        scheduler.tick()
        assert scheduler.pending_count == 0

    print("\n✓ TEST F3 PASSED: Render Loop - Placeholder")


def test_render_loop_pipeline():
    """
    Test Case F4: Filter + Layout Pipeline

    Assertions:
    - Entities hidden by time drop out of the layout
    - Entity colors follow their index in the full analysis
    - Layout is reused until an input changes
    - Fresh live detections hide entity boxes and labels in the composite
    - Once the detections go stale the call-outs are drawn again
    """
    print("\n" + "="*60)
    print("TEST F4: Render Loop - Pipeline")
    print("="*60)

    analysis = parse_analysis_result({
        "objects": [
            {"id": "a", "name": "Alpha", "box_2d": [100, 100, 300, 300], "timestamp": "00:01"},
            {"id": "b", "name": "Bravo", "box_2d": [500, 600, 700, 900], "timestamp": "00:05",
             "details": [{"name": "wheel", "location_point": [650, 700], "description": "front"},
                         {"name": "mirror", "location_point": [560, 650], "description": "left"}]},
        ],
    })
    video = FakeVideo(size=(400, 300), t=5.0)
    scheduler = FrameScheduler(clock=lambda: 0.0)
    loop = RenderLoop(scheduler, InteractionController(), display_size=(320, 240))
    loop.set_media(video)
    loop.set_analysis(analysis)

    frame = loop.build_frame()
    assert [e.id for e in frame.entities] == ["b"]
    labels = frame.layout.labels
    assert [label.id for label in labels] == ["head_b", "det_b_0", "det_b_1"]
    assert all(label.color == PALETTE[1] for label in labels)
    assert all(label.side == Side.RIGHT for label in labels)

    again = loop.build_frame()
    assert again.layout is frame.layout, "unchanged inputs must reuse the layout"

    loop.set_detail_level(10)
    assert loop.build_frame().layout is not frame.layout

    video.t = 1.0
    frame = loop.build_frame()
    assert [e.id for e in frame.entities] == ["a"]
    assert frame.layout.labels[0].color == PALETTE[0]

    # Sample pixels inside Alpha's header label (left margin) and on its box edge
    loop.set_display_size((1200, 600))
    header = frame.layout.labels[0]
    matrix = view_matrix(loop.controller.view, loop.display_size, frame.media_size, loop.dpr)
    tx, ty = header.target
    lx, ly = media_to_screen(matrix, tx + header.width / 2 - LABEL_PADDING / 2, ty)
    ex, ey = media_to_screen(matrix, 40.0, 75.0)
    label_px = (int(round(ly)), int(round(lx)))
    edge_px = (int(round(ey)), int(round(ex)))

    def near(pixel, color, tol=40):
        return int(np.abs(pixel.astype(int) - np.array(color)).max()) <= tol

    loop.render_now()
    plain = loop.snapshot()
    assert near(plain[label_px], PALETTE[0]), f"label fill missing: {plain[label_px]}"
    assert near(plain[edge_px], PALETTE[0]), f"entity box missing: {plain[edge_px]}"

    cup = LiveDetection("cup", (600, 600, 700, 700), capture_timestamp=0.5)
    loop.set_live_source(lambda: [cup])
    frame = loop.build_frame()
    assert frame.live_detections == [cup]
    loop.render_now()
    live = loop.snapshot()
    assert tuple(live[label_px]) == (255, 255, 255), "labels hidden while live boxes are fresh"
    assert tuple(live[edge_px]) == (0, 0, 255), "entity box hidden while live boxes are fresh"

    # A stale detection no longer suppresses the call-outs
    late = LiveDetection("cup", (600, 600, 700, 700), capture_timestamp=3.0)
    loop.set_live_source(lambda: [late])
    assert loop.build_frame().live_detections == []
    loop.render_now()
    restored = loop.snapshot()
    assert near(restored[label_px], PALETTE[0])
    assert near(restored[edge_px], PALETTE[0])

    # Stale detections disappear
    loop.set_live_source(lambda: [cup])
    video.t = 3.0
    assert loop.build_frame().live_detections == []

    print("\n✓ TEST F4 PASSED: Render Loop - Pipeline")


def _stroke_width(canvas, row, x, color, reach=10, tol=40):
    """Count pixels on one row near x that carry the stroke color."""
    segment = canvas[row, x - reach:x + reach + 1].astype(int)
    return int(np.sum(np.abs(segment - np.array(color)).max(axis=1) <= tol))


def test_live_stroke_width():
    """
    Test Case F5: Zoom-Independent Strokes

    Assertions:
    - A live box outline is equally thick at scale 0.5 and 4.0
    - The outline sits where the view matrix maps the box edge
    """
    print("\n" + "="*60)
    print("TEST F5: Live Stroke Width")
    print("="*60)

    renderer = OverlayRenderer(OverlayConfig(grid_spacing=0))
    media = np.zeros((300, 400, 3), dtype=np.uint8)
    det = LiveDetection("cup", (250, 250, 750, 750))
    live_color = renderer.colors.live

    widths = {}
    for scale in (0.5, 4.0):
        view = ViewState(scale=scale)
        frame = FrameInput(
            media_frame=media,
            media_size=(400, 300),
            view=view,
            display_size=(1200, 900),
            live_detections=[det],
        )
        canvas = renderer.render(frame)
        matrix = view_matrix(view, (1200, 900), (400, 300))
        left, _ = media_to_screen(matrix, 100.0, 150.0)
        widths[scale] = _stroke_width(canvas, 450, int(round(left)), live_color)
        print(f"  Scale {scale}: outline {widths[scale]}px at x={left:.1f}")

    assert widths[0.5] == widths[4.0], f"stroke width changed with zoom: {widths}"
    assert 3 <= widths[0.5] <= 6

    print("\n✓ TEST F5 PASSED: Live Stroke Width")


def test_sanitizer():
    """
    Test Case G1: Input Sanitizing

    Assertions:
    - Malformed boxes become zero-area and are skipped, never fatal
    - Out-of-range coordinates are clamped
    - Missing ids, details and names get safe defaults
    - Non-JSON analysis text raises AnalysisFormatError
    """
    print("\n" + "="*60)
    print("TEST G1: Sanitizer")
    print("="*60)

    result = parse_analysis_result("""{
        "summary": "street",
        "objects": [
            {"id": "ok", "name": "Car", "box_2d": [100, 100, 400, 400],
             "details": [{"name": "door", "location_point": [200, 150]},
                         {"name": "bad", "location_point": "nowhere"}]},
            {"name": "Ghost", "box_2d": "garbage"},
            {"id": "wide", "name": "Wide", "box_2d": [0, -50, 2000, 1500]},
            "not an object"
        ],
        "audio_analysis": {"subtitles": [
            {"start": "00:01", "end": "00:03", "text": "hello"},
            {"start": "never", "end": "00:03", "text": "dropped"}
        ]}
    }""")

    ids = [e.id for e in result.entities]
    print(f"  Entities: {ids}")
    assert ids == ["ok", "obj_1", "wide"]
    assert result.summary == "street"
    assert [d.name for d in result.entities[0].details] == ["door"]
    assert result.entities[1].box == ZERO_BOX
    assert result.entities[1].details == ()
    assert result.entities[2].box == (0.0, 0.0, 1000.0, 1000.0)
    assert len(result.subtitles) == 1 and result.subtitles[0].start == 1.0

    labels = LayoutSolver().build_labels(result.entities, (640, 480))
    assert {label.id for label in labels} == {"head_ok", "det_ok_0", "head_wide"}

    detections = parse_live_detections(
        [{"label": "cup", "box_2d": [1, 2, 3, 4]}, {"box_2d": None}, 7], capture_timestamp=2.0
    )
    assert len(detections) == 2
    assert detections[1].box == ZERO_BOX and detections[1].label == ""
    assert all(d.capture_timestamp == 2.0 for d in detections)

    # Zero-area boxes render as nothing, not as a crash
    scheduler = FrameScheduler(clock=lambda: 0.0)
    loop = RenderLoop(scheduler, InteractionController(), display_size=(200, 150))
    loop.set_media(StaticImageSampler(np.zeros((48, 64, 3), dtype=np.uint8)))
    loop.set_analysis(result)
    loop.set_live_source(lambda: detections)
    assert loop.render_now().shape == (150, 200, 3)

    try:
        parse_analysis_result("I'm sorry, I can't help with that.")
    except AnalysisFormatError:
        pass
    else:
        raise AssertionError("non-JSON analysis must raise AnalysisFormatError")

    print("\n✓ TEST G1 PASSED: Sanitizer")


def test_config_env():
    """
    Test Case G2: Environment Overrides

    Assertions:
    - CALLOUTRAY_* variables override defaults
    - Unparseable values are ignored
    """
    print("\n" + "="*60)
    print("TEST G2: Config Overrides")
    print("="*60)

    keys = ["CALLOUTRAY_VISIBILITY_WINDOW", "CALLOUTRAY_LAYOUT_ITERATIONS", "CALLOUTRAY_MAX_SCALE"]
    saved = {key: os.environ.get(key) for key in keys}
    try:
        os.environ["CALLOUTRAY_VISIBILITY_WINDOW"] = "0.8"
        os.environ["CALLOUTRAY_LAYOUT_ITERATIONS"] = "many"
        os.environ["CALLOUTRAY_MAX_SCALE"] = "4"
        config = OverlayConfig.from_env(load_dotenv_files=False)
        assert config.visibility_window == 0.8
        assert config.layout_iterations == 20
        assert config.max_scale == 4.0
        assert config.clamp_scale(10) == 4.0
    finally:
        for key, value in saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    print("\n✓ TEST G2 PASSED: Config Overrides")


class FakeDetector:
    """Stands in for AnalysisClient.detect_live without any network."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def is_available(self):
        return True

    def detect_live(self, frame, capture_timestamp=None):
        self.calls.append(capture_timestamp)
        if self.error is not None:
            raise self.error
        return parse_live_detections([{"label": "cup", "box_2d": [10, 10, 50, 50]}], capture_timestamp)


class RateLimited(Exception):
    status_code = 429


def test_live_poller():
    """
    Test Case G3: Live Detection Poller

    Assertions:
    - Results are stamped with the playhead at capture time
    - Rate limits switch to the slow cadence and pause polling
    - Other errors keep the previous results
    - Nothing is polled while inactive or before the first frame
    """
    print("\n" + "="*60)
    print("TEST G3: Live Poller")
    print("="*60)

    video = FakeVideo(t=4.0)
    detector = FakeDetector()
    poller = LiveDetectionPoller(detector, video)

    assert poller.poll_once() == 1.0
    latest = poller.latest()
    assert len(latest) == 1 and latest[0].capture_timestamp == 4.0
    assert isinstance(latest, tuple)

    limited = LiveDetectionPoller(FakeDetector(error=RateLimited("429 Too Many Requests")), video)
    assert limited.poll_once() == 5.0
    assert limited.rate_limited
    assert limited.poll_once() == 1.0
    assert len(limited.client.calls) == 1, "must not poll while backing off"

    failing = LiveDetectionPoller(FakeDetector(error=RuntimeError("boom")), video)
    assert failing.poll_once() == 1.0 and failing.latest() == ()

    video.ready = False
    assert LiveDetectionPoller(FakeDetector(), video).poll_once() == 0.5
    video.ready = True

    idle = LiveDetectionPoller(FakeDetector(), video, is_active=lambda: False)
    assert idle.poll_once() == 0.5 and idle.client.calls == []

    # Paused playback sends no requests by default
    video.playing = False
    paused = LiveDetectionPoller(FakeDetector(), video)
    assert paused.poll_once() == 0.5 and paused.client.calls == []
    video.playing = True
    assert paused.poll_once() == 1.0 and len(paused.client.calls) == 1

    closed = VideoFileSampler("clip.mp4")
    closed.play()
    assert not closed.is_active, "a video that is not open is not active"

    poller.clear()
    assert poller.latest() == ()

    print("\n✓ TEST G3 PASSED: Live Poller")


class GuardedCapture:
    """cv2.VideoCapture stand-in that counts calls overlapping another call."""

    def __init__(self, size=(64, 48)):
        self.size = size
        self.busy = False
        self.overlaps = 0
        self.reads = 0
        self.seeks = 0

    def _enter(self):
        if self.busy:
            self.overlaps += 1
        self.busy = True
        time.sleep(0.0005)

    def read(self):
        self._enter()
        self.reads += 1
        self.busy = False
        return True, np.zeros((self.size[1], self.size[0], 3), dtype=np.uint8)

    def set(self, prop, value):
        self._enter()
        self.seeks += 1
        self.busy = False
        return True

    def release(self):
        pass


def test_shared_video_capture():
    """
    Test Case G4: Poller and Render Thread Share One Video

    Assertions:
    - The poller thread samples while the render thread draws
    - Decoder calls never overlap
    - Sampled frames are private copies
    """
    print("\n" + "="*60)
    print("TEST G4: Shared Video Capture")
    print("="*60)

    ticks = itertools.count()
    video = VideoFileSampler("clip.mp4", loop=True, clock=lambda: next(ticks) / 30.0)
    capture = GuardedCapture()
    video._cap = capture
    video._width, video._height = capture.size
    video._fps, video._total_frames = 30.0, 300
    video.play()

    frame, _ = video.sample()
    assert frame is not None and frame is not video._frame

    scheduler = FrameScheduler(clock=lambda: 0.0)
    loop = RenderLoop(scheduler, InteractionController(), display_size=(160, 120))
    loop.set_media(video)
    detector = FakeDetector()
    poller = LiveDetectionPoller(detector, video, interval=0.0)

    poller.start()
    try:
        deadline = time.monotonic() + 5.0
        while (len(detector.calls) < 25 or loop.frames_rendered < 25) and time.monotonic() < deadline:
            loop.render_now()
    finally:
        poller.stop()

    print(f"  Polls: {len(detector.calls)}, frames: {loop.frames_rendered}, "
          f"reads: {capture.reads}, seeks: {capture.seeks}")
    assert len(detector.calls) >= 25 and loop.frames_rendered >= 25
    assert capture.overlaps == 0, f"{capture.overlaps} overlapping decoder calls"
    assert not poller.is_running

    print("\n✓ TEST G4 PASSED: Shared Video Capture")


def test_single_frame_analysis():
    """
    Test Case G5: Single-Frame Analysis

    Assertions:
    - The detail budget reaches the request
    - Entities from one frame are scene-persistent on video
    """
    print("\n" + "="*60)
    print("TEST G5: Single-Frame Analysis")
    print("="*60)

    reply = json.dumps({"objects": [
        {"id": "car", "name": "Car", "box_2d": [100, 100, 400, 400], "timestamp": "00:07"},
    ]})
    requests = []

    def complete(model, system, user_text, image_b64, detail):
        requests.append((user_text, detail))
        return reply

    client = AnalysisClient(api_key="test-key")
    client._initialized = True
    client._client = object()
    client._complete = complete

    result = client.analyze_frame(np.zeros((48, 64, 3), dtype=np.uint8), detail_level=40)
    assert len(requests) == 1
    assert "up to 2 details" in requests[0][0] and requests[0][1] == "high"
    assert [e.id for e in result.entities] == ["car"]
    assert result.entities[0].timestamp is None

    temporal = TemporalFilter()
    assert temporal.is_entity_visible(result.entities[0], 30.0, is_video=True)

    print("\n✓ TEST G5 PASSED: Single-Frame Analysis")


TESTS = [
    ("Test A: Coordinate Transform", test_coordinate_transform),
    ("Test B1: Temporal Visibility", test_temporal_visibility),
    ("Test B2: Live Staleness", test_live_staleness),
    ("Test B3: Detail Budget", test_detail_budget),
    ("Test C1: Layout Sides", test_layout_sides),
    ("Test C2: Layout Overlap", test_layout_no_overlap),
    ("Test C3: Layout Budget", test_layout_budget),
    ("Test D: Connectors", test_connector_geometry),
    ("Test E1: Zoom Clamp", test_zoom_clamp),
    ("Test E2: Pan and Reset", test_pan_and_reset),
    ("Test F1: Still Image", test_render_loop_still_image),
    ("Test F2: Cancellation", test_render_loop_cancellation),
    ("Test F3: Placeholder", test_render_loop_placeholder),
    ("Test F4: Pipeline", test_render_loop_pipeline),
    ("Test F5: Stroke Width", test_live_stroke_width),
    ("Test G1: Sanitizer", test_sanitizer),
    ("Test G2: Config Overrides", test_config_env),
    ("Test G3: Live Poller", test_live_poller),
    ("Test G4: Shared Capture", test_shared_video_capture),
    ("Test G5: Single-Frame Analysis", test_single_frame_analysis),
]


def main():
    """Run all tests."""
    print("\n" + "="*60)
    print("CalloutRay Overlay Engine - Unit Tests")
    print("="*60)

    results = []

    for name, test in TESTS:
        try:
            test()
            results.append((name, True))
        except AssertionError as e:
            print(f"\n✗ {name} FAILED: {e}")
            results.append((name, False))
        except Exception as e:
            print(f"\n✗ {name} ERROR: {e}")
            import traceback
            traceback.print_exc()
            results.append((name, False))

    # Summary
    print("\n" + "="*60)
    print("TEST SUMMARY")
    print("="*60)
    for name, passed in results:
        status = "✓ PASSED" if passed else "✗ FAILED"
        print(f"  {name}: {status}")

    all_passed = all(result for _, result in results)
    print("\n" + ("="*60))
    if all_passed:
        print("✓ ALL TESTS PASSED")
    else:
        print("✗ SOME TESTS FAILED")
    print("="*60 + "\n")

    return 0 if all_passed else 1


if __name__ == "__main__":
    sys.exit(main())
