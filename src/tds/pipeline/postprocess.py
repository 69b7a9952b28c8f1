from __future__ import annotations

import logging

import numpy as np

from tds.detector.models.model_spec import ModelSpec
from tds.monitoring.metrics import RuntimeMetrics
from tds.pipeline.channel import Channel
from tds.types import Detection, DetectionRaw, FrameResult


def _cxcywh_to_xyxy(boxes: np.ndarray) -> np.ndarray:
    out = np.empty_like(boxes)
    half_w = boxes[:, 2] / 2.0
    half_h = boxes[:, 3] / 2.0
    out[:, 0] = boxes[:, 0] - half_w
    out[:, 1] = boxes[:, 1] - half_h
    out[:, 2] = boxes[:, 0] + half_w
    out[:, 3] = boxes[:, 1] + half_h
    return out


def decode_output(
    output: np.ndarray, spec: ModelSpec
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Candidate boxes (xyxy, input pixels), scores and class ids above the confidence threshold."""
    pred = np.asarray(output, dtype=np.float32)
    if spec.output_format == "yolov8":
        if pred.ndim != 2 or pred.shape[0] < 5:
            raise ValueError(f"yolov8 output must be [4+nc, N], got {pred.shape}")
        pred = pred.T
        boxes = _cxcywh_to_xyxy(pred[:, :4])
        class_scores = pred[:, 4:]
        classes = class_scores.argmax(axis=1)
        scores = class_scores.max(axis=1)
    elif spec.output_format == "yolov5":
        if pred.ndim != 2 or pred.shape[1] < 6:
            raise ValueError(f"yolov5 output must be [N, 5+nc], got {pred.shape}")
        boxes = _cxcywh_to_xyxy(pred[:, :4])
        class_scores = pred[:, 5:] * pred[:, 4:5]
        classes = class_scores.argmax(axis=1)
        scores = class_scores.max(axis=1)
    else:
        if pred.ndim != 2 or pred.shape[1] < 6:
            raise ValueError(f"xyxy_conf_cls output must be [N, 6], got {pred.shape}")
        boxes = pred[:, :4].copy()
        scores = pred[:, 4]
        classes = pred[:, 5].astype(np.int64)

    if spec.normalized_coordinates:
        boxes[:, [0, 2]] *= spec.input_width
        boxes[:, [1, 3]] *= spec.input_height

    keep = np.isfinite(scores) & (scores >= spec.confidence) & np.isfinite(boxes).all(axis=1)
    return boxes[keep], scores[keep], classes[keep].astype(np.int64)


def box_iou(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    x1 = np.maximum(box[0], others[:, 0])
    y1 = np.maximum(box[1], others[:, 1])
    x2 = np.minimum(box[2], others[:, 2])
    y2 = np.minimum(box[3], others[:, 3])
    inter = np.clip(x2 - x1, 0, None) * np.clip(y2 - y1, 0, None)
    area = max(0.0, float(box[2] - box[0])) * max(0.0, float(box[3] - box[1]))
    areas = np.clip(others[:, 2] - others[:, 0], 0, None) * np.clip(
        others[:, 3] - others[:, 1], 0, None
    )
    union = area + areas - inter
    return np.where(union > 0, inter / np.maximum(union, 1e-12), 0.0)


def non_max_suppression(
    boxes: np.ndarray,
    scores: np.ndarray,
    classes: np.ndarray,
    iou_threshold: float,
    class_agnostic: bool = True,
    max_detections: int = 100,
) -> list[int]:
    """Greedy NMS. Returns kept indices, highest score first.

    Equal scores keep their input order. A candidate is dropped when its IoU
    with an already kept box exceeds `iou_threshold`; in class-wise mode only
    boxes of the same class suppress each other.
    """
    if len(scores) == 0:
        return []
    order = np.argsort(-np.asarray(scores), kind="stable")
    suppressed = np.zeros(len(order), dtype=bool)
    keep: list[int] = []
    for position, index in enumerate(order):
        if suppressed[position]:
            continue
        keep.append(int(index))
        if len(keep) >= max_detections:
            break
        rest = order[position + 1 :]
        if len(rest) == 0:
            break
        overlaps = box_iou(boxes[index], boxes[rest]) > iou_threshold
        if not class_agnostic:
            overlaps &= classes[rest] == classes[index]
        suppressed[position + 1 :] |= overlaps
    return keep


def postprocess(raw: DetectionRaw, spec: ModelSpec) -> FrameResult:
    if raw.error:
        return FrameResult(media_id=raw.media_id, frame_index=raw.frame_index, error=raw.error)
    if not raw.outputs:
        return FrameResult(
            media_id=raw.media_id,
            frame_index=raw.frame_index,
            error="model produced no outputs",
        )

    boxes, scores, classes = decode_output(raw.outputs[0], spec)
    kept = non_max_suppression(
        boxes,
        scores,
        classes,
        iou_threshold=spec.iou,
        class_agnostic=spec.class_agnostic,
        max_detections=spec.max_detections,
    )

    detections: list[Detection] = []
    for index in kept:
        x1, y1, x2, y2 = raw.transform.invert_box(*(float(v) for v in boxes[index]))
        if x2 - x1 <= 0 or y2 - y1 <= 0:
            continue
        class_id = int(classes[index])
        detections.append(
            Detection(
                class_id=class_id,
                label=spec.label_for(class_id),
                confidence=float(scores[index]),
                x1=x1,
                y1=y1,
                x2=x2,
                y2=y2,
            )
        )
    return FrameResult(media_id=raw.media_id, frame_index=raw.frame_index, detections=detections)


class Postprocessor:
    def __init__(
        self,
        spec: ModelSpec,
        raws: Channel[DetectionRaw],
        results: Channel[object],
        metrics: RuntimeMetrics | None = None,
    ) -> None:
        self._spec = spec
        self._raws = raws
        self._results = results
        self._metrics = metrics or RuntimeMetrics()
        self._logger = logging.getLogger("tds.postprocess")

    def run(self) -> None:
        for raw in self._raws:
            try:
                result = postprocess(raw, self._spec)
            except (ValueError, IndexError) as exc:
                self._logger.warning(
                    "decode failed media_id=%d frame=%d error=%s",
                    raw.media_id,
                    raw.frame_index,
                    exc,
                )
                result = FrameResult(
                    media_id=raw.media_id,
                    frame_index=raw.frame_index,
                    error=f"output decode failed: {exc}",
                )
            self._metrics.add_detections(len(result.detections))
            self._results.put(result)
