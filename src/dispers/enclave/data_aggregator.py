"""
Data Aggregator role.

Aggregations run in layers. The first layer applies AggregationFunctions to
the raw rows collected from targets; every later layer applies
AggregationPatches that merge the results of the previous layer. Every result
is a partial record that a patch can merge again, e.g. a mean keeps its sum
and length next to the mean itself.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np
from pydantic import ValidationError

from dispers.shared.codec import Cipher, PayloadCodec
from dispers.shared.errors import PayloadDecodeError, UnknownAggregationError
from dispers.shared.protocol import (
    AggregationFunction,
    AggregationJob,
    AggregationPatch,
    InputDA,
    OutputDA,
)
from dispers.shared.utils import Timer

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Partial = Dict[str, Any]


def _values(rows: List[Row], key: str) -> np.ndarray:
    """Numeric values of `key`; rows without it or with non-numbers are skipped."""
    values = [
        row[key] for row in rows
        if key in row and isinstance(row[key], (int, float)) and not isinstance(row[key], bool)
    ]
    return np.asarray(values, dtype=np.float64)


def _finish_mean(partial: Partial) -> Partial:
    length = partial["length"]
    partial["mean"] = partial["sum"] / length if length else None
    return partial


def _finish_std(partial: Partial) -> Partial:
    _finish_mean(partial)
    length = partial["length"]
    if length:
        variance = max(partial["sum_sq"] / length - partial["mean"] ** 2, 0.0)
        partial["std"] = float(np.sqrt(variance))
    else:
        partial["std"] = None
    return partial


# Functions: raw rows -> partial

def _fn_sum(rows: List[Row], key: str) -> Partial:
    return {"sum": float(_values(rows, key).sum())}


def _fn_count(rows: List[Row], key: Optional[str]) -> Partial:
    if key is None:
        return {"length": len(rows)}
    return {"length": sum(1 for row in rows if key in row)}


def _fn_mean(rows: List[Row], key: str) -> Partial:
    values = _values(rows, key)
    return _finish_mean({"sum": float(values.sum()), "length": int(values.size)})


def _fn_std(rows: List[Row], key: str) -> Partial:
    values = _values(rows, key)
    return _finish_std({
        "sum": float(values.sum()),
        "sum_sq": float(np.square(values).sum()),
        "length": int(values.size),
    })


def _fn_min(rows: List[Row], key: str) -> Partial:
    values = _values(rows, key)
    return {"min": float(values.min()) if values.size else None}


def _fn_max(rows: List[Row], key: str) -> Partial:
    values = _values(rows, key)
    return {"max": float(values.max()) if values.size else None}


# Patches: partials of the previous layer -> partial

def _total(partials: List[Partial], field: str) -> float:
    return float(np.sum([p.get(field) or 0 for p in partials]))


def _patch_sum(partials: List[Partial]) -> Partial:
    return {"sum": _total(partials, "sum")}


def _patch_count(partials: List[Partial]) -> Partial:
    return {"length": int(_total(partials, "length"))}


def _patch_mean(partials: List[Partial]) -> Partial:
    return _finish_mean({"sum": _total(partials, "sum"), "length": int(_total(partials, "length"))})


def _patch_std(partials: List[Partial]) -> Partial:
    return _finish_std({
        "sum": _total(partials, "sum"),
        "sum_sq": _total(partials, "sum_sq"),
        "length": int(_total(partials, "length")),
    })


def _patch_extreme(field: str, pick: Callable) -> Callable[[List[Partial]], Partial]:
    def patch(partials: List[Partial]) -> Partial:
        values = [p[field] for p in partials if p.get(field) is not None]
        return {field: float(pick(values)) if values else None}
    return patch


FUNCTIONS: Dict[str, Callable[..., Partial]] = {
    "sum": _fn_sum,
    "count": _fn_count,
    "mean": _fn_mean,
    "std": _fn_std,
    "min": _fn_min,
    "max": _fn_max,
}

PATCHES: Dict[str, Callable[[List[Partial]], Partial]] = {
    "sum": _patch_sum,
    "count": _patch_count,
    "mean": _patch_mean,
    "std": _patch_std,
    "min": _patch_extreme("min", np.min),
    "max": _patch_extreme("max", np.max),
}


def result_name(job: AggregationJob) -> str:
    """Name under which a job's result is stored."""
    if job.args.get("name"):
        return str(job.args["name"])
    key = job.args.get("key")
    return f"{job.job}_{key}" if key else job.job


def translate(job: AggregationJob, layer: int) -> Union[AggregationFunction, AggregationPatch]:
    """
    Derive the executable form of a job for an aggregation layer.

    Raises:
        UnknownAggregationError: The job names no known function
    """
    if job.job not in FUNCTIONS:
        raise UnknownAggregationError(job.job, FUNCTIONS.keys())
    args = dict(job.args)
    args.setdefault("name", result_name(job))
    if layer == 0:
        return AggregationFunction(function=job.job, args=args)
    return AggregationPatch(patch=job.job, args=args)


def apply_function(function: AggregationFunction, rows: List[Row]) -> Partial:
    key = function.args.get("key")
    if key is None and function.function != "count":
        raise PayloadDecodeError(f"Aggregation {function.function!r} needs a 'key' argument")
    return FUNCTIONS[function.function](rows, key)


def apply_patch(patch: AggregationPatch, rows: List[Row]) -> Partial:
    name = patch.args["name"]
    partials = [row[name] for row in rows if isinstance(row.get(name), dict)]
    return PATCHES[patch.patch](partials)


class DataAggregator:
    """Data Aggregator enclave."""

    def __init__(self, cipher: Optional[Cipher] = None):
        self.codec = PayloadCodec(cipher)

    def _jobs(self, request: InputDA) -> List[AggregationJob]:
        raw = self.codec.open(request.enc_jobs, request.is_encrypted, "jobs")
        if not isinstance(raw, list):
            raise PayloadDecodeError("Jobs are not a list")
        try:
            return [AggregationJob.model_validate(job) for job in raw]
        except ValidationError as e:
            raise PayloadDecodeError(f"Invalid aggregation job: {e}") from e

    def _data(self, request: InputDA) -> List[Row]:
        rows = self.codec.open(request.enc_data, request.is_encrypted, "data")
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise PayloadDecodeError("Data is not a list of objects")
        return rows

    def run(self, request: InputDA) -> OutputDA:
        """
        Apply the jobs of one aggregation slot.

        Args:
            request: Jobs and data of slot `aggregation_id` = (layer, index)

        Returns:
            Results keyed by result name, with the request's identifiers
        """
        layer = request.aggregation_id[0]
        jobs = self._jobs(request)
        rows = self._data(request)

        results = {}
        with Timer() as t:
            for job in jobs:
                executable = translate(job, layer)
                if isinstance(executable, AggregationFunction):
                    results[executable.args["name"]] = apply_function(executable, rows)
                else:
                    results[executable.args["name"]] = apply_patch(executable, rows)

        logger.debug(
            "Aggregation %s of query %s: %d jobs over %d rows in %.2fms",
            list(request.aggregation_id), request.query_id, len(jobs), len(rows), t.elapsed_ms,
        )
        return OutputDA(
            results=results,
            query_id=request.query_id,
            aggregation_id=request.aggregation_id,
            task_metadata=request.task_metadata,
        )
