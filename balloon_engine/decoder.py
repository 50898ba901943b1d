"""Decode raw detector output tensors into normalized DetectedObjects.

Supported layouts, selected once from the output tensor specs:

- grid 4D ``1 x H x W x [anchors * (5 + classes)]`` (YOLO head, one per layer)
- grid 5D ``1 x H x W x anchors x values``
- flat 3D ``1 x N x values`` (rows of cx, cy, w, h, obj/score, ...)
- post-processed ``boxes[1 x N x 5], class_ids[1 x N], count[1]``
- detection API ``boxes[1 x N x 4], classes[1 x N], scores[1 x N], count[1]``

Grid and flat tensors may be mixed across output layers; every layer is
decoded and the results concatenated.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .config import DetectorConfig
from .interpreter import TensorSpec
from .types import DetectedObject

logger = logging.getLogger(__name__)


class UnsupportedLayoutError(ValueError):
    pass


@dataclass(frozen=True)
class DecodeContext:
    input_width: int
    input_height: int
    num_classes: int
    confidence_threshold: float
    anchors: np.ndarray  # (K, 2) pixel w,h

    @classmethod
    def from_config(cls, cfg: DetectorConfig, input_width: int, input_height: int) -> "DecodeContext":
        return cls(
            input_width=int(input_width),
            input_height=int(input_height),
            num_classes=int(cfg.num_classes),
            confidence_threshold=float(cfg.confidence_threshold),
            anchors=np.asarray(cfg.anchors, dtype=np.float64).reshape(-1, 2),
        )


def _sigmoid(x: np.ndarray) -> np.ndarray:
    with np.errstate(over="ignore"):
        return 1.0 / (1.0 + np.exp(-x))


def _to_objects(
    class_ids: np.ndarray,
    scores: np.ndarray,
    x_min: np.ndarray,
    y_min: np.ndarray,
    x_max: np.ndarray,
    y_max: np.ndarray,
) -> list[DetectedObject]:
    x_min = np.clip(x_min, 0.0, 1.0)
    y_min = np.clip(y_min, 0.0, 1.0)
    x_max = np.clip(x_max, 0.0, 1.0)
    y_max = np.clip(y_max, 0.0, 1.0)
    return [
        DetectedObject(
            class_id=int(c),
            confidence=float(s),
            x_min=float(a),
            y_min=float(b),
            x_max=float(cc),
            y_max=float(d),
        )
        for c, s, a, b, cc, d in zip(class_ids, scores, x_min, y_min, x_max, y_max)
    ]


def _center_to_objects(
    class_ids: np.ndarray,
    scores: np.ndarray,
    cx: np.ndarray,
    cy: np.ndarray,
    w: np.ndarray,
    h: np.ndarray,
) -> list[DetectedObject]:
    return _to_objects(class_ids, scores, cx - w / 2.0, cy - h / 2.0, cx + w / 2.0, cy + h / 2.0)


def _decode_grid(raw: np.ndarray, anchor_mask: Sequence[int], ctx: DecodeContext) -> list[DetectedObject]:
    """Decode a H x W x A x V grid with YOLO box parameterization."""
    grid_h, grid_w, num_anchors, _ = raw.shape
    raw = raw.astype(np.float64, copy=False)
    thr = ctx.confidence_threshold

    objectness = _sigmoid(raw[..., 4])
    class_scores = _sigmoid(raw[..., 5 : 5 + ctx.num_classes])
    best_class = class_scores.argmax(axis=-1)
    best_score = class_scores.max(axis=-1)
    confidence = objectness * best_score

    keep = (objectness >= thr) & (confidence >= thr)
    cy, cx, a = np.nonzero(keep)
    if cy.size == 0:
        return []

    t = raw[cy, cx, a]
    mask = np.asarray(anchor_mask, dtype=np.int64)
    anchor_wh = ctx.anchors[mask[a]]

    bx = (_sigmoid(t[:, 0]) + cx) / grid_w
    by = (_sigmoid(t[:, 1]) + cy) / grid_h
    with np.errstate(over="ignore"):
        bw = np.exp(t[:, 2]) * anchor_wh[:, 0] / ctx.input_width
        bh = np.exp(t[:, 3]) * anchor_wh[:, 1] / ctx.input_height

    return _center_to_objects(best_class[cy, cx, a], confidence[cy, cx, a], bx, by, bw, bh)


def _normalize_center(v: np.ndarray, dim: int) -> np.ndarray:
    # Values above 1 are pixel-scale at the model input size.
    return np.where(v > 1.0, v / float(dim), v)


@dataclass(frozen=True)
class GridLayer4D:
    tensor_index: int
    anchor_mask: tuple[int, ...]
    name = "grid-4d"

    def decode(self, outputs: Sequence[np.ndarray], ctx: DecodeContext) -> list[DetectedObject]:
        out = np.asarray(outputs[self.tensor_index])
        if out.ndim != 4:
            raise UnsupportedLayoutError(f"{self.name}: expected rank 4, got {out.shape}")
        per_anchor = 5 + ctx.num_classes
        grid_h, grid_w, values = out.shape[1:]
        num_anchors = values // per_anchor
        mask = self.anchor_mask if len(self.anchor_mask) == num_anchors else tuple(range(num_anchors))
        grid = out[0, :, :, : num_anchors * per_anchor].reshape(grid_h, grid_w, num_anchors, per_anchor)
        return _decode_grid(grid, mask, ctx)


@dataclass(frozen=True)
class GridLayer5D:
    tensor_index: int
    anchor_mask: tuple[int, ...]
    name = "grid-5d"

    def decode(self, outputs: Sequence[np.ndarray], ctx: DecodeContext) -> list[DetectedObject]:
        out = np.asarray(outputs[self.tensor_index])
        if out.ndim != 5 or out.shape[4] < 5 + ctx.num_classes:
            raise UnsupportedLayoutError(f"{self.name}: unexpected shape {out.shape}")
        num_anchors = out.shape[3]
        # Identity mask when the configured one does not fit this layer.
        mask = self.anchor_mask if len(self.anchor_mask) == num_anchors else tuple(range(num_anchors))
        return _decode_grid(out[0], mask, ctx)


@dataclass(frozen=True)
class FlatLayer3D:
    tensor_index: int
    name = "flat-3d"

    def decode(self, outputs: Sequence[np.ndarray], ctx: DecodeContext) -> list[DetectedObject]:
        out = np.asarray(outputs[self.tensor_index])
        if out.ndim != 3:
            raise UnsupportedLayoutError(f"{self.name}: expected rank 3, got {out.shape}")
        rows = out[0].astype(np.float64, copy=False)
        values = rows.shape[1]
        thr = ctx.confidence_threshold

        if values >= 5 + ctx.num_classes:
            objectness = rows[:, 4]
            scores = rows[:, 5 : 5 + ctx.num_classes]
            best_class = scores.argmax(axis=1)
            best_score = np.maximum(scores.max(axis=1), 0.0)
            # A non-positive best score means no class was chosen.
            best_class = np.where(best_score > 0.0, best_class, 0)
            confidence = objectness * best_score
            keep = (objectness >= thr) & (confidence >= thr)
        elif values >= 6:
            confidence = rows[:, 4]
            best_class = np.clip(rows[:, 5].astype(np.int64), 0, ctx.num_classes - 1)
            keep = confidence >= thr
        else:
            return []

        rows = rows[keep]
        cx = _normalize_center(rows[:, 0], ctx.input_width)
        cy = _normalize_center(rows[:, 1], ctx.input_height)
        w = _normalize_center(rows[:, 2], ctx.input_width)
        h = _normalize_center(rows[:, 3], ctx.input_height)
        return _center_to_objects(best_class[keep], confidence[keep], cx, cy, w, h)


@dataclass(frozen=True)
class YoloOutputLayout:
    """Grid and/or flat layers, one per output tensor."""

    layers: tuple[GridLayer4D | GridLayer5D | FlatLayer3D, ...]

    @property
    def name(self) -> str:
        return "+".join(layer.name for layer in self.layers)

    def decode(self, outputs: Sequence[np.ndarray], ctx: DecodeContext) -> list[DetectedObject]:
        detections: list[DetectedObject] = []
        for layer in self.layers:
            detections.extend(layer.decode(outputs, ctx))
        return detections


def _first_batch(arr: np.ndarray) -> np.ndarray:
    arr = np.asarray(arr)
    return (arr[0] if arr.ndim >= 2 else arr).reshape(-1)


def _padded_ids(ids: np.ndarray, total: int) -> np.ndarray:
    # Missing class ids default to 0 (speech balloon).
    out = np.zeros(total, dtype=np.int64)
    n = min(total, ids.size)
    out[:n] = ids[:n].astype(np.int64)
    return out


def _valid_count(count: np.ndarray, max_detections: int) -> int:
    flat = np.asarray(count).reshape(-1)
    if flat.size == 0:
        return max_detections
    return int(min(max(int(flat[0]), 0), max_detections))


@dataclass(frozen=True)
class PostProcessLayout:
    """boxes (y_min, x_min, y_max, x_max, score), class ids, valid count."""

    name = "postprocess"

    def decode(self, outputs: Sequence[np.ndarray], ctx: DecodeContext) -> list[DetectedObject]:
        boxes = np.asarray(outputs[0])
        if boxes.ndim != 3 or boxes.shape[2] < 5:
            raise UnsupportedLayoutError(f"{self.name}: unexpected boxes shape {boxes.shape}")
        boxes = boxes[0].astype(np.float64, copy=False)
        class_ids = _first_batch(outputs[1])
        total = _valid_count(outputs[2], boxes.shape[0])

        boxes = boxes[:total]
        class_ids = _padded_ids(class_ids, total)
        keep = boxes[:, 4] >= ctx.confidence_threshold
        boxes = boxes[keep]
        class_ids = class_ids[keep]

        y_min, x_min, y_max, x_max = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
        pixel_scale = (boxes[:, :4] > 1.0).any(axis=1)
        x_min = np.where(pixel_scale, x_min / ctx.input_width, x_min)
        x_max = np.where(pixel_scale, x_max / ctx.input_width, x_max)
        y_min = np.where(pixel_scale, y_min / ctx.input_height, y_min)
        y_max = np.where(pixel_scale, y_max / ctx.input_height, y_max)
        return _to_objects(class_ids, boxes[:, 4], x_min, y_min, x_max, y_max)


@dataclass(frozen=True)
class DetectionApiLayout:
    """boxes (y_min, x_min, y_max, x_max) normalized, classes, scores, count."""

    name = "detection-api"

    def decode(self, outputs: Sequence[np.ndarray], ctx: DecodeContext) -> list[DetectedObject]:
        boxes = np.asarray(outputs[0])
        if boxes.ndim != 3 or boxes.shape[2] < 4:
            raise UnsupportedLayoutError(f"{self.name}: unexpected boxes shape {boxes.shape}")
        boxes = boxes[0].astype(np.float64, copy=False)
        classes = _first_batch(outputs[1])
        scores = _first_batch(outputs[2]).astype(np.float64)
        total = min(_valid_count(outputs[3], boxes.shape[0]), classes.size, scores.size)

        boxes, classes, scores = boxes[:total], classes[:total].astype(np.int64), scores[:total]
        keep = scores >= ctx.confidence_threshold
        boxes, classes, scores = boxes[keep], classes[keep], scores[keep]
        return _to_objects(classes, scores, boxes[:, 1], boxes[:, 0], boxes[:, 3], boxes[:, 2])


@dataclass(frozen=True)
class UnrecognizedLayout:
    reason: str
    name = "unrecognized"

    def decode(self, outputs: Sequence[np.ndarray], ctx: DecodeContext) -> list[DetectedObject]:
        return []


OutputLayout = YoloOutputLayout | PostProcessLayout | DetectionApiLayout | UnrecognizedLayout


def select_layout(output_specs: Sequence[TensorSpec], cfg: DetectorConfig) -> OutputLayout:
    """Pick the decoding strategy from output tensor shapes.

    Raises UnsupportedLayoutError when no output tensor can be decoded.
    """
    specs = list(output_specs)
    if not specs:
        raise UnsupportedLayoutError("model has no outputs")

    if (
        len(specs) == 3
        and specs[0].rank == 3
        and specs[0].shape[-1] == 5
        and specs[1].rank == 2
        and specs[2].rank == 1
    ):
        return PostProcessLayout()

    if len(specs) >= 4 and specs[0].rank == 3 and specs[0].shape[-1] == 4:
        return DetectionApiLayout()

    per_anchor = 5 + cfg.num_classes
    masks = cfg.anchor_masks or ((),)
    layers: list[GridLayer4D | GridLayer5D | FlatLayer3D] = []
    for i, spec in enumerate(specs):
        mask = tuple(masks[i] if i < len(masks) else masks[0])
        if spec.rank == 5 and spec.shape[4] >= per_anchor:
            layers.append(GridLayer5D(tensor_index=i, anchor_mask=mask))
        elif spec.rank == 4 and spec.shape[3] >= per_anchor and spec.shape[3] % per_anchor == 0:
            layers.append(GridLayer4D(tensor_index=i, anchor_mask=mask))
        elif spec.rank == 3 and spec.shape[2] >= 6:
            layers.append(FlatLayer3D(tensor_index=i))
        else:
            logger.debug("output %d (%s) not decodable, skipped", i, spec.describe())

    if not layers:
        shapes = ", ".join(s.describe() for s in specs)
        raise UnsupportedLayoutError(f"no decodable output among: {shapes}")
    return YoloOutputLayout(layers=tuple(layers))
