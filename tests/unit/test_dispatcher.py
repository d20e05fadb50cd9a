"""
Tests for the node execution dispatcher.
"""

import asyncio
import base64
import json
import random
from io import BytesIO

from PIL import Image

from bananaflow.core.dispatcher import NodeDispatcher, RunState
from bananaflow.core.graph import GARMENT_PORT, IMAGE_PORT, MODEL_PORT, PROMPT_PORT, GraphStore, Node
from bananaflow.core.node_data import NodeKind
from bananaflow.core.scheduler import RequestScheduler, RetryPolicy
from bananaflow.providers.base import (
    GenerationError,
    GenerationRequest,
    GenerationResult,
    GenerationService,
    OutputFormat,
    ProviderConfig,
    RateLimitError,
)


class StubService(GenerationService):
    """Records requests and answers with numbered images."""

    id = "stub"
    name = "Stub"

    def __init__(self, error=None, text=None, on_generate=None):
        super().__init__(ProviderConfig(api_key="test"))
        self.requests: list[GenerationRequest] = []
        self.error = error
        self.text = text
        self.on_generate = on_generate

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.on_generate:
            self.on_generate()
        if self.error:
            raise self.error
        if request.output is not OutputFormat.IMAGE:
            return GenerationResult(text=self.text)
        return GenerationResult(images=[f"data:image/png;base64,OUT{len(self.requests)}"])


class SlowTextService(StubService):
    """Takes a few loop turns to answer and records that it did."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.finished = False

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        for _ in range(3):
            await asyncio.sleep(0)
        result = await super().generate(request)
        self.finished = True
        return result


def png_base64(size=(40, 40)):
    buf = BytesIO()
    Image.new("RGB", size, (255, 255, 255)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


async def _no_sleep(seconds):
    await asyncio.sleep(0)


def make_dispatcher(store, service, max_attempts=10, pose_detector=None):
    scheduler = RequestScheduler(
        min_gap=0.0,
        retry=RetryPolicy(max_attempts=max_attempts, jitter_max=0.0),
        sleep=_no_sleep,
        rng=random.Random(0),
    )
    return NodeDispatcher(store, service, scheduler=scheduler, pose_detector=pose_detector)


def build(*nodes, edges=()):
    store = GraphStore(nodes=list(nodes))
    for source, target, handle in edges:
        store.connect(source, target, handle)
    return store


def execute(dispatcher, node_id, payload=None):
    asyncio.run(dispatcher.execute(node_id, payload))


class TestGenerate:

    def test_prompt_to_image(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="g"),
            edges=[("p", "g", PROMPT_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        data = store.get_node("g").data
        assert data.image == "data:image/png;base64,OUT1"
        assert data.gallery == [data.image]
        assert data.is_loading is False
        assert data.error is None
        assert dispatcher.state("g") is RunState.SUCCEEDED
        assert [r.prompt for r in service.requests] == ["a cat"]
        assert service.requests[0].aspect_ratio == "1:1"

    def test_missing_prompt_never_calls_service(self):
        store = build(Node.create(NodeKind.GENERATE, node_id="g"))
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        data = store.get_node("g").data
        assert data.error == "Connect at least one prompt node."
        assert data.is_loading is False
        assert data.image is None
        assert service.requests == []
        assert dispatcher.state("g") is RunState.FAILED

    def test_one_request_per_prompt(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p1", text="one"),
            Node.create(NodeKind.PROMPT, node_id="p2", text="two"),
            Node.create(NodeKind.GENERATE, node_id="g"),
            edges=[("p1", "g", PROMPT_PORT), ("p2", "g", PROMPT_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        data = store.get_node("g").data
        assert len(service.requests) == 2
        assert len(data.gallery) == 2
        assert data.image == data.gallery[0]

    def test_batch_fails_as_a_whole(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p1", text="one"),
            Node.create(NodeKind.PROMPT, node_id="p2", text="two"),
            Node.create(NodeKind.GENERATE, node_id="g", image="old", gallery=["old"]),
            edges=[("p1", "g", PROMPT_PORT), ("p2", "g", PROMPT_PORT)],
        )
        service = StubService()

        def fail_second():
            if len(service.requests) == 2:
                raise GenerationError("nope")

        service.on_generate = fail_second
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        data = store.get_node("g").data
        assert len(service.requests) == 2
        assert data.image == "old"
        assert data.gallery == []
        assert data.error == "Generation failed: nope"
        assert data.is_loading is False
        assert dispatcher.state("g") is RunState.FAILED

    def test_references_are_sent(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="src", image="REF"),
            Node.create(NodeKind.GENERATE, node_id="g"),
            edges=[("p", "g", PROMPT_PORT), ("src", "g", IMAGE_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        request = service.requests[0]
        assert request.images == ["REF"]
        assert request.prompt.endswith("a cat")

    def test_fatal_error_is_written(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="g"),
            edges=[("p", "g", PROMPT_PORT)],
        )
        service = StubService(error=GenerationError("blocked"))
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        data = store.get_node("g").data
        assert data.error == "Generation failed: blocked"
        assert data.is_loading is False
        assert len(service.requests) == 1

    def test_exhaustion_message(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="g"),
            edges=[("p", "g", PROMPT_PORT)],
        )
        service = StubService(error=RateLimitError("429"))
        dispatcher = make_dispatcher(store, service, max_attempts=2)

        execute(dispatcher, "g")

        data = store.get_node("g").data
        assert data.error == "Quota exhausted or service busy, try again later."
        assert len(service.requests) == 2

    def test_disabled_node_is_a_no_op(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="g", disabled=True),
            edges=[("p", "g", PROMPT_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        assert service.requests == []
        assert dispatcher.state("g") is RunState.IDLE

    def test_removed_node_drops_result(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="g"),
            edges=[("p", "g", PROMPT_PORT)],
        )
        service = StubService(on_generate=lambda: store.remove_node("g"))
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "g")

        assert "g" not in store

    def test_notifications(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="g"),
            Node.create(NodeKind.GENERATE, node_id="lonely"),
            edges=[("p", "g", PROMPT_PORT)],
        )
        dispatcher = make_dispatcher(store, StubService())
        notices = []
        dispatcher.set_notification_callback(lambda *args: notices.append(args))

        execute(dispatcher, "g")
        execute(dispatcher, "lonely")

        assert [(n[0], n[1]) for n in notices] == [("g", "success"), ("lonely", "error")]

    def test_run_and_drain(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a cat"),
            Node.create(NodeKind.GENERATE, node_id="g1"),
            Node.create(NodeKind.GENERATE, node_id="g2"),
            edges=[("p", "g1", PROMPT_PORT), ("p", "g2", PROMPT_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        async def main():
            dispatcher.run("g1")
            dispatcher.run("g2")
            await dispatcher.drain()

        asyncio.run(main())

        assert store.get_node("g1").data.image is not None
        assert store.get_node("g2").data.image is not None
        assert len(service.requests) == 2


class TestImageHandlers:

    def test_edit_uses_connected_prompt(self):
        store = build(
            Node.create(NodeKind.GENERATE, node_id="src", image="SRC"),
            Node.create(NodeKind.PROMPT, node_id="p", text="make it blue"),
            Node.create(NodeKind.EDIT, node_id="e", text="ignored"),
            edges=[("src", "e", IMAGE_PORT), ("p", "e", PROMPT_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "e")

        request = service.requests[0]
        assert request.images == ["SRC"]
        assert "make it blue" in request.prompt
        assert store.get_node("e").data.image == "data:image/png;base64,OUT1"

    def test_edit_falls_back_to_own_text(self):
        store = build(
            Node.create(NodeKind.EDIT, node_id="e", uploaded_image="UP", text="add a hat"),
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "e")

        assert "add a hat" in service.requests[0].prompt

    def test_edit_without_image(self):
        store = build(Node.create(NodeKind.EDIT, node_id="e", text="add a hat"))
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "e")

        assert store.get_node("e").data.error == "Upload or connect an image first."
        assert service.requests == []

    def test_outpaint_direction_from_payload(self):
        store = build(Node.create(NodeKind.OUTPAINT, node_id="o", uploaded_image="UP"))
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "o", {"direction": "left"})

        assert store.get_node("o").data.direction == "left"
        assert service.requests[0].prompt.startswith("Extend the image to the left.")

    def test_image_to_text(self):
        store = build(Node.create(NodeKind.IMAGE_TO_TEXT, node_id="i", uploaded_image="UP"))
        service = StubService(text="  A red fox in snow.  ")
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "i")

        assert store.get_node("i").data.text == "A red fox in snow."
        assert service.requests[0].output is OutputFormat.TEXT

    def test_inpaint_requires_mask(self):
        store = build(Node.create(NodeKind.INPAINT, node_id="i", uploaded_image="UP", text="a dog"))
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "i")

        assert store.get_node("i").data.error == "Paint a mask over the area to replace."
        assert service.requests == []

    def test_character_analyze(self):
        attributes = {"style": "anime", "feature_points": []}
        store = build(Node.create(NodeKind.CHARACTER_EDIT, node_id="c", uploaded_image="UP"))
        service = StubService(text=json.dumps(attributes))
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "c", {"type": "analyze"})

        data = store.get_node("c").data
        assert data.character_attributes == attributes
        assert data.is_analyzing is False
        assert service.requests[0].output is OutputFormat.JSON

    def test_character_identify_adds_point(self):
        store = build(Node.create(NodeKind.CHARACTER_EDIT, node_id="c", uploaded_image=png_base64()))
        service = StubService(text=" left eye \n")
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "c", {"type": "identify", "x": 25, "y": 50, "id": "pt1"})

        data = store.get_node("c").data
        assert data.character_attributes["customEdits"] == [
            {"id": "pt1", "x": 25.0, "y": 50.0, "prompt": "Change the left eye: ", "label": "left eye"},
        ]
        assert data.is_analyzing is False
        request = service.requests[0]
        assert request.output is OutputFormat.TEXT
        assert request.images[0].startswith("data:image/png;base64,")

    def test_character_identify_updates_existing_point(self):
        attributes = {
            "style": "anime",
            "customEdits": [{"id": "pt1", "x": 10, "y": 10, "prompt": "make it blue", "label": "..."}],
        }
        store = build(Node.create(
            NodeKind.CHARACTER_EDIT, node_id="c",
            uploaded_image=png_base64(), character_attributes=attributes,
        ))
        service = StubService(text="")
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "c", {"type": "identify", "x": 10, "y": 10, "id": "pt1"})

        data = store.get_node("c").data
        assert data.character_attributes["style"] == "anime"
        assert data.character_attributes["customEdits"] == [
            {"id": "pt1", "x": 10, "y": 10, "prompt": "make it blue", "label": "Unknown element"},
        ]

    def test_character_identify_needs_point(self):
        store = build(Node.create(NodeKind.CHARACTER_EDIT, node_id="c", uploaded_image=png_base64()))
        service = StubService(text="hair")
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "c", {"type": "identify", "x": 40})

        assert store.get_node("c").data.error == "Pick a point on the image first."
        assert service.requests == []


class TestCompositeHandlers:

    def test_video_sprite_sheets(self):
        store = build(
            Node.create(NodeKind.PROMPT, node_id="p", text="a knight running"),
            Node.create(NodeKind.VIDEO, node_id="v", frame_count=24),
            edges=[("p", "v", PROMPT_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "v")

        assert len(store.get_node("v").data.sprite_sheets) == 2
        assert all(r.aspect_ratio == "4:3" for r in service.requests)

    def test_video_veo_unsupported(self):
        store = build(Node.create(NodeKind.VIDEO, node_id="v", video_type="veo", text="waves"))
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "v")

        assert store.get_node("v").data.error.startswith("Generation failed:")
        assert service.requests == []

    def test_try_on_needs_garment(self):
        store = build(
            Node.create(NodeKind.GENERATE, node_id="m", image="MODEL"),
            Node.create(NodeKind.ECOMMERCE, node_id="x", ecommerce_mode="try_on"),
            edges=[("m", "x", MODEL_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "x")

        assert store.get_node("x").data.error == "Garment image required for try-on."
        assert service.requests == []

    def test_try_on(self):
        store = build(
            Node.create(NodeKind.GENERATE, node_id="m", image="MODEL"),
            Node.create(NodeKind.GENERATE, node_id="gm", image="GARMENT"),
            Node.create(NodeKind.ECOMMERCE, node_id="x", ecommerce_mode="try_on"),
            edges=[("m", "x", MODEL_PORT), ("gm", "x", GARMENT_PORT)],
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "x")

        assert service.requests[0].images == ["MODEL", "GARMENT"]
        assert service.requests[0].aspect_ratio == "3:4"

    def test_pose_skeleton_needs_landmarks(self):
        store = build(Node.create(NodeKind.POSE, node_id="ps", uploaded_image="UP"))
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "ps")

        assert store.get_node("ps").data.error == "No skeleton data; run pose detection first."

    def test_pose_text_mode(self):
        store = build(
            Node.create(NodeKind.POSE, node_id="ps", uploaded_image="UP",
                        pose_control_mode="text", pose_description="arms raised"),
        )
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "ps")

        assert "arms raised" in service.requests[0].prompt
        assert store.get_node("ps").data.image == "data:image/png;base64,OUT1"

    def test_pose_detect_with_detector(self):
        landmarks = [{"x": 0.5, "y": 0.5, "z": 0.0}]

        async def detector(image):
            return landmarks

        store = build(Node.create(NodeKind.POSE, node_id="ps", uploaded_image="UP"))
        service = StubService(text="Standing tall.")
        dispatcher = make_dispatcher(store, service, pose_detector=detector)

        execute(dispatcher, "ps", {"type": "detect"})

        data = store.get_node("ps").data
        assert data.pose_landmarks == landmarks
        assert data.pose_description == "Standing tall."
        assert data.is_analyzing is False

    def test_pose_detector_failure_waits_for_description(self):
        async def detector(image):
            raise RuntimeError("camera offline")

        store = build(Node.create(NodeKind.POSE, node_id="ps", uploaded_image="UP"))
        service = SlowTextService(text="Standing tall.")
        dispatcher = make_dispatcher(store, service, pose_detector=detector)

        execute(dispatcher, "ps", {"type": "detect"})

        data = store.get_node("ps").data
        assert data.error == "Generation failed: camera offline"
        assert data.is_analyzing is False
        assert data.pose_description is None
        assert service.finished

    def test_kind_without_handler(self):
        store = build(Node.create(NodeKind.NOTE, node_id="n", text="hello"))
        service = StubService()
        dispatcher = make_dispatcher(store, service)

        execute(dispatcher, "n")

        assert dispatcher.state("n") is RunState.IDLE
        assert service.requests == []
