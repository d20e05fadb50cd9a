"""
Node Execution Dispatcher - Run nodes against the generation service.

The dispatcher is the only component that writes run results into node
data. For each run it:
1. Resolves the node's inputs from the graph
2. Writes a descriptive error and stops if a required input is missing
3. Otherwise marks the node loading and submits requests through the
   scheduler
4. Writes outputs (or the error message) back and clears the loading flag

Retries are the scheduler's business; a failure seen here is final.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum, auto
from functools import partial
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from bananaflow.core import operations as ops
from bananaflow.core.graph import (
    GARMENT_PORT,
    IMAGE_PORT,
    MODEL_PORT,
    Edge,
    GraphStore,
    Node,
    NodeId,
)
from bananaflow.core.node_data import NodeKind
from bananaflow.core.resolution import (
    MissingInputError,
    resolve_port_image,
    resolve_port_text,
    resolve_run_inputs,
)
from bananaflow.core.scheduler import RequestScheduler, get_scheduler
from bananaflow.providers.base import (
    GenerationError,
    GenerationRequest,
    GenerationResult,
    GenerationService,
    ResourceExhaustedError,
    UnsupportedOperationError,
)


logger = logging.getLogger(__name__)

# (node_id, level, message) with level in {"success", "error", "info"}
NotificationCallback = Callable[[NodeId, str, str], None]

# Detects pose landmarks on-device; not routed through the scheduler
PoseDetector = Callable[[str], Awaitable[list[dict[str, Any]]]]

DEFAULT_POSE_PROMPT = "A character in this pose"
DEFAULT_SKETCH_PROMPT = "Enhance this sketch"
UNKNOWN_ELEMENT = "Unknown element"


class RunState(Enum):
    """Run-scoped state of a node."""
    IDLE = auto()
    RESOLVING = auto()
    DISPATCHED = auto()
    SUCCEEDED = auto()
    FAILED = auto()


class NodeDispatcher:
    """
    Per-node-kind orchestration between the graph and the service.

    Usage:
        dispatcher = NodeDispatcher(store, service)
        dispatcher.run(node_id)            # fire-and-forget
        await dispatcher.execute(node_id)  # or wait for the outcome
    """

    def __init__(
        self,
        store: GraphStore,
        service: GenerationService,
        scheduler: RequestScheduler | None = None,
        pose_detector: PoseDetector | None = None,
        language: str = "English",
    ):
        self._store = store
        self._service = service
        self._scheduler = scheduler or get_scheduler()
        self._pose_detector = pose_detector
        self._language = language

        self._states: dict[NodeId, RunState] = {}
        self._tasks: set[asyncio.Task] = set()
        self._on_notify: NotificationCallback | None = None

        self._handlers: dict[NodeKind, Callable[[Node, dict[str, Any]], Awaitable[None]]] = {
            NodeKind.GENERATE: self._run_generate,
            NodeKind.EDIT: self._run_edit,
            NodeKind.ENHANCE: self._run_enhance,
            NodeKind.INPAINT: self._run_inpaint,
            NodeKind.OUTPAINT: self._run_outpaint,
            NodeKind.IMAGE_TO_TEXT: self._run_image_to_text,
            NodeKind.DRAW: self._run_draw,
            NodeKind.CHARACTER_EDIT: self._run_character_edit,
            NodeKind.POSE: self._run_pose,
            NodeKind.ECOMMERCE: self._run_ecommerce,
            NodeKind.VIDEO: self._run_video,
        }

    def set_notification_callback(self, callback: NotificationCallback) -> None:
        """Set the callback used for success/failure notices."""
        self._on_notify = callback

    def state(self, node_id: NodeId) -> RunState:
        """Run state of a node (IDLE if it never ran)."""
        return self._states.get(node_id, RunState.IDLE)

    def run(self, node_id: NodeId, payload: dict[str, Any] | None = None) -> asyncio.Task:
        """
        Start a node run without waiting for it.

        Must be called from within a running event loop. The outcome is
        observed through the node's data.
        """
        task = asyncio.get_running_loop().create_task(self.execute(node_id, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every run started with ``run`` to finish."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def execute(self, node_id: NodeId, payload: dict[str, Any] | None = None) -> None:
        """Run a node to completion. Never raises for run failures."""
        node = self._store.get_node(node_id)
        if node is None or node.data.disabled:
            return

        handler = self._handlers.get(node.kind)
        if handler is None:
            logger.debug("Node kind %s has nothing to run", node.kind.value)
            return

        self._states[node_id] = RunState.RESOLVING
        try:
            await handler(node, payload or {})
        except MissingInputError as e:
            self._fail(node_id, str(e))
        except ResourceExhaustedError as e:
            logger.warning("Node %s gave up after %d attempts", node_id, e.attempts)
            self._fail(node_id, str(e))
        except Exception as e:
            logger.warning("Node %s failed: %s", node_id, e)
            self._fail(node_id, f"Generation failed: {e}")

    # --- Run lifecycle ---

    def _graph(self) -> tuple[Mapping[NodeId, Node], list[Edge]]:
        return {n.id: n for n in self._store.nodes}, self._store.edges

    def _begin(self, node_id: NodeId, **patch: Any) -> None:
        self._states[node_id] = RunState.DISPATCHED
        self._store.update_node_data(node_id, is_loading=True, error=None, **patch)

    def _finish(self, node_id: NodeId, message: str, **outputs: Any) -> None:
        self._states[node_id] = RunState.SUCCEEDED
        if node_id not in self._store:
            logger.info("Node %s was removed; dropping its result", node_id)
            return
        self._store.update_node_data(node_id, is_loading=False, **outputs)
        self._notify(node_id, "success", message)

    def _fail(self, node_id: NodeId, message: str) -> None:
        self._states[node_id] = RunState.FAILED
        node = self._store.get_node(node_id)
        if node is None:
            logger.info("Node %s was removed; dropping its error", node_id)
            return
        patch: dict[str, Any] = {"is_loading": False, "error": message}
        if hasattr(node.data, "is_analyzing"):
            patch["is_analyzing"] = False
        self._store.update_node_data(node_id, **patch)
        self._notify(node_id, "error", message)

    def _notify(self, node_id: NodeId, level: str, message: str) -> None:
        if self._on_notify:
            self._on_notify(node_id, level, message)

    # --- Service calls ---

    async def _submit(self, request: GenerationRequest) -> GenerationResult:
        return await self._scheduler.schedule(partial(self._service.generate, request))

    async def _submit_all(self, requests: list[GenerationRequest]) -> list[GenerationResult]:
        """Submit a batch; it succeeds or fails as a whole."""
        tasks = [self._scheduler.schedule(partial(self._service.generate, r)) for r in requests]
        return await _gather_all(*tasks)

    async def _submit_image(self, request: GenerationRequest) -> str:
        return _image_of(await self._submit(request))

    # --- Handlers ---

    async def _run_generate(self, node: Node, payload: dict[str, Any]) -> None:
        nodes, edges = self._graph()
        inputs = resolve_run_inputs(node, nodes, edges)

        self._begin(node.id, gallery=[])
        requests = [
            ops.text_to_image(prompt, inputs.images, node.data.aspect_ratio)
            for prompt in inputs.prompts
        ]
        images = [_image_of(r) for r in await self._submit_all(requests)]
        self._finish(node.id, "Image generated", image=images[0], gallery=images)

    async def _run_edit(self, node: Node, payload: dict[str, Any]) -> None:
        image = self._require_image(node)
        prompt = self._prompt_for(node)
        if not prompt:
            raise MissingInputError("Connect a prompt or enter an edit instruction.")

        self._begin(node.id)
        result = await self._submit_image(ops.edit_image(image, prompt))
        self._finish(node.id, "Image edited", image=result)

    async def _run_enhance(self, node: Node, payload: dict[str, Any]) -> None:
        image = self._require_image(node)

        self._begin(node.id)
        result = await self._submit_image(ops.enhance_image(image))
        self._finish(node.id, "Image enhanced", image=result)

    async def _run_inpaint(self, node: Node, payload: dict[str, Any]) -> None:
        image = self._require_image(node)
        mask = node.data.mask
        if not mask:
            raise MissingInputError("Paint a mask over the area to replace.")
        prompt = self._prompt_for(node)
        if not prompt:
            raise MissingInputError("Connect a prompt describing the fill.")

        self._begin(node.id)
        result = await self._submit_image(ops.inpaint_image(image, mask, prompt))
        self._finish(node.id, "Inpainting complete", image=result)

    async def _run_outpaint(self, node: Node, payload: dict[str, Any]) -> None:
        image = self._require_image(node)
        direction = payload.get("direction") or node.data.direction or "zoom-out"
        prompt = self._prompt_for(node) or ""

        self._begin(node.id, direction=direction)
        request = ops.extend_image(image, prompt, direction, node.data.aspect_ratio)
        result = await self._submit_image(request)
        self._finish(node.id, "Image extended", image=result)

    async def _run_image_to_text(self, node: Node, payload: dict[str, Any]) -> None:
        image = self._require_image(node)

        self._begin(node.id)
        result = await self._submit(ops.describe_image(image, self._language))
        if not result.text:
            raise GenerationError("No description returned")
        self._finish(node.id, "Prompt extracted", text=result.text.strip())

    async def _run_draw(self, node: Node, payload: dict[str, Any]) -> None:
        sketch = node.data.sketch
        if not sketch:
            raise MissingInputError("The canvas is empty.")
        prompt = self._prompt_for(node) or DEFAULT_SKETCH_PROMPT

        self._begin(node.id)
        result = await self._submit_image(ops.sketch_to_image(prompt, sketch))
        self._finish(node.id, "Sketch rendered", image=result)

    async def _run_character_edit(self, node: Node, payload: dict[str, Any]) -> None:
        image = self._require_image(node)

        if payload.get("type") == "analyze":
            self._begin(node.id, is_analyzing=True)
            result = await self._submit(ops.analyze_character(image, self._language))
            try:
                attributes = json.loads(result.text or "{}")
            except json.JSONDecodeError as e:
                raise GenerationError("Failed to parse character analysis.") from e
            self._finish(
                node.id, "Character analyzed",
                character_attributes=attributes, is_analyzing=False,
            )
            return

        if payload.get("type") == "identify":
            await self._identify_point(node, image, payload)
            return

        attributes = node.data.character_attributes or {}
        self._begin(node.id)
        result = await self._submit_image(ops.character_from_attributes(image, attributes))
        self._finish(node.id, "Character regenerated", image=result)

    async def _identify_point(self, node: Node, image: str, payload: dict[str, Any]) -> None:
        """Name the element under a clicked point and record it as a custom edit."""
        if payload.get("x") is None or payload.get("y") is None:
            raise MissingInputError("Pick a point on the image first.")
        x, y = float(payload["x"]), float(payload["y"])

        self._begin(node.id, is_analyzing=True)
        result = await self._submit(ops.identify_element(image, x, y, self._language))
        label = (result.text or "").strip() or UNKNOWN_ELEMENT

        # Re-read: the attributes may have changed while the request was queued
        current = self._store.get_node(node.id)
        attributes = dict((current or node).data.character_attributes or {})
        edits = [dict(edit) for edit in attributes.get("customEdits") or []]
        point_id = payload.get("id") or f"edit_{uuid4().hex[:8]}"
        for edit in edits:
            if edit.get("id") == point_id:
                break
        else:
            edit = {"id": point_id, "x": x, "y": y, "prompt": ""}
            edits.append(edit)
        edit["label"] = label
        if not edit.get("prompt"):
            edit["prompt"] = f"Change the {label}: "
        attributes["customEdits"] = edits

        self._finish(
            node.id, f"Identified {label}",
            character_attributes=attributes, is_analyzing=False,
        )

    async def _run_pose(self, node: Node, payload: dict[str, Any]) -> None:
        action = payload.get("type", "generate")
        data = node.data

        if action == "analyze_ref":
            reference = payload.get("image")
            if not reference:
                raise MissingInputError("Upload a reference image to describe.")
            self._begin(node.id, pose_reference_image=reference)
            result = await self._submit(ops.describe_pose(reference, self._language))
            self._finish(node.id, "Pose described", pose_description=(result.text or "").strip())
            return

        nodes, edges = self._graph()
        image = resolve_port_image(node, nodes, edges)
        if not image:
            raise MissingInputError("Upload or connect the original image first.")

        if action == "detect":
            self._begin(node.id, is_analyzing=True)
            describe = self._submit(ops.describe_pose(image, self._language))
            if self._pose_detector is not None:
                landmarks, result = await _gather_all(self._pose_detector(image), describe)
            else:
                landmarks, result = data.pose_landmarks, await describe
            self._finish(
                node.id, "Pose detected",
                pose_landmarks=landmarks,
                pose_description=(result.text or "").strip(),
                is_analyzing=False,
            )
            return

        if action != "generate":
            raise ValueError(f"Unknown pose action: {action}")

        prompt = data.pose_description or DEFAULT_POSE_PROMPT
        linked = resolve_port_text(node, nodes, edges)
        if linked:
            prompt = f"{data.pose_description}. {linked}" if data.pose_description else linked

        mode = data.pose_control_mode or "skeleton"
        if mode == "skeleton":
            if not data.pose_landmarks:
                raise MissingInputError("No skeleton data; run pose detection first.")
            if data.pose_skeleton_image:
                request = ops.pose_from_skeleton(data.pose_skeleton_image, prompt, image, data.aspect_ratio)
            else:
                request = ops.pose_from_text(image, prompt, data.aspect_ratio)
        else:
            request = ops.pose_from_text(image, prompt, data.aspect_ratio)

        self._begin(node.id, is_analyzing=False)
        result = await self._submit_image(request)
        self._finish(node.id, "Pose applied", image=result)

    async def _run_ecommerce(self, node: Node, payload: dict[str, Any]) -> None:
        data = node.data
        mode = data.ecommerce_mode or "model"
        nodes, edges = self._graph()

        model = (
            resolve_port_image(node, nodes, edges, MODEL_PORT)
            or resolve_port_image(node, nodes, edges, IMAGE_PORT)
        )
        # Chaining: a previous result feeds the next step
        if not model and data.image and mode in ("extract", "try_on"):
            model = data.image

        garment = data.ecommerce_garment_image or resolve_port_image(
            node, nodes, edges, GARMENT_PORT, use_uploaded=False
        )
        if not garment and data.image and mode == "ref_extract":
            garment = data.image

        prompt = resolve_port_text(node, nodes, edges) or ""
        request = ops.ecommerce_image(mode, model, garment, data.ecommerce_attributes, prompt)

        self._begin(node.id)
        result = await self._submit_image(request)
        self._finish(node.id, "E-commerce task complete", image=result)

    async def _run_video(self, node: Node, payload: dict[str, Any]) -> None:
        data = node.data
        if (data.video_type or "sequence") == "veo":
            raise UnsupportedOperationError("Video generation is not supported by this service.")

        nodes, edges = self._graph()
        prompt = resolve_port_text(node, nodes, edges) or data.text
        if not prompt:
            raise MissingInputError("Connect a prompt describing the animation.")
        reference = resolve_port_image(node, nodes, edges)
        count = ops.sheet_count(data.frame_count or ops.FRAMES_PER_SHEET)

        self._begin(node.id, sprite_sheets=[])
        sheets: list[str] = []
        for index in range(count):
            try:
                sheets.append(await self._submit_image(ops.sprite_sheet(prompt, reference)))
            except Exception as e:
                if not sheets:
                    raise
                logger.warning("Sprite sheet %d/%d failed, keeping %d: %s", index + 1, count, len(sheets), e)
                break
        self._finish(node.id, f"{len(sheets)} sprite sheet(s) generated", sprite_sheets=sheets)

    # --- Input helpers ---

    def _require_image(self, node: Node) -> str:
        nodes, edges = self._graph()
        image = resolve_port_image(node, nodes, edges)
        if not image:
            raise MissingInputError("Upload or connect an image first.")
        return image

    def _prompt_for(self, node: Node) -> str | None:
        """Connected prompt text, falling back to the node's own text."""
        nodes, edges = self._graph()
        return resolve_port_text(node, nodes, edges) or node.data.text


def _image_of(result: GenerationResult) -> str:
    image = result.first_image
    if not image:
        raise GenerationError("No image generated")
    return image


async def _gather_all(*aws: Awaitable[Any]) -> list[Any]:
    """Await everything, then raise the first error if there was one."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results
