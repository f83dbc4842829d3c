"""Transport-independent entry points.

Each function takes a dict (or a JSON string) in any supported naming and
returns a plain dict ready for ``json.dumps``. Failures come back as
``{"error": message}``; no entry point raises on bad input.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Union

from oref_engine.core.autosens import detect_sensitivity
from oref_engine.core.cob import calculate_meal
from oref_engine.core.determine_basal import determine_basal as _determine_basal
from oref_engine.core.determine_basal import error_result
from oref_engine.core.glucose_status import detect_flat_bgs, get_glucose_status
from oref_engine.core.insulin_curves import curve_params
from oref_engine.core.iob import calculate_iob_array
from oref_engine.core.predictions import horizon_ticks
from oref_engine.core.profile import validate_profile
from oref_engine.errors import OrefError, StaleOrMissingGlucose
from oref_engine.parsing import inputs_builder as ib
from oref_engine.parsing import result_writer as rw
from oref_engine.parsing.field_names import NAMINGS, REQUEST, wire_name
from oref_engine.structs import DetermineBasalInputs

logger = logging.getLogger(__name__)

Payload = Union[str, bytes, Dict[str, Any]]

# malformed payloads surface as one of these from the builders
INPUT_ERRORS = (OrefError, ValueError, TypeError, KeyError)


def _load(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, dict):
        raise TypeError(f"request must be a JSON object, got {type(payload).__name__}")
    return ib.build_request(payload)


def _naming(req: Dict[str, Any]) -> str:
    naming = req.get("naming") or "legacy"
    if naming not in NAMINGS:
        raise ValueError(f"unknown naming {naming!r}, expected one of {NAMINGS}")
    return naming


def _time(req: Dict[str, Any]) -> int:
    time = ib.parse_time(req.get("time"))
    if time is None:
        raise ValueError("an explicit evaluation time is required")
    return time


def _profile(req: Dict[str, Any]):
    if req.get("profile") is None:
        raise ValueError("profile is required")
    profile = ib.build_profile(req["profile"])
    validate_profile(profile)
    return profile


def _failure(e: Exception) -> Dict[str, Any]:
    logger.warning("request rejected: %s", e)
    return {"error": str(e)}


def calculate_iob(payload: Payload) -> Dict[str, Any]:
    """IOB now (``currentOnly``) or for every 5 minutes over the insulin action time."""
    try:
        req = _load(payload)
        naming = _naming(req)
        time = _time(req)
        profile = _profile(req)
        treatments = ib.build_treatments(req.get("treatments"))
        if req.get("current_only"):
            pairs = calculate_iob_array(profile, treatments, time, ticks=1)
            return {"iob": rw.write_iob_pair(pairs[0], naming)}
        return {"iob": rw.write_iob_array(calculate_iob_array(profile, treatments, time), naming)}
    except INPUT_ERRORS as e:
        return _failure(e)


def calculate_cob(payload: Payload) -> Dict[str, Any]:
    try:
        req = _load(payload)
        naming = _naming(req)
        meal = calculate_meal(
            _profile(req),
            ib.build_glucose(req.get("glucose")),
            ib.build_treatments(req.get("treatments")),
            _time(req),
        )
        return rw.write_meal(meal, naming)
    except INPUT_ERRORS as e:
        return _failure(e)


def calculate_autosens(payload: Payload) -> Dict[str, Any]:
    try:
        req = _load(payload)
        naming = _naming(req)
        result = detect_sensitivity(
            _profile(req),
            ib.build_glucose(req.get("glucose")),
            ib.build_treatments(req.get("treatments")),
            _time(req),
        )
        return rw.write_autosens(result, naming)
    except INPUT_ERRORS as e:
        return _failure(e)


def calculate_glucose_status(payload: Payload) -> Dict[str, Any]:
    try:
        req = _load(payload)
        naming = _naming(req)
        status = get_glucose_status(ib.build_glucose(req.get("glucose")))
        out = rw.write_glucose_status(status, naming)
        out[wire_name("flat_bgs_detected", REQUEST, naming)] = detect_flat_bgs(status)
        return out
    except INPUT_ERRORS as e:
        return _failure(e)


def build_determine_basal_inputs(req: Dict[str, Any]) -> DetermineBasalInputs:
    """Fill in whatever the caller did not precompute from glucose and treatment history."""
    time = _time(req)
    profile = _profile(req)
    glucose = ib.build_glucose(req.get("glucose"))
    treatments = ib.build_treatments(req.get("treatments"))

    status = ib.build_glucose_status(req.get("glucose_status"))
    if status is None:
        if not glucose:
            raise StaleOrMissingGlucose("no glucose status or readings supplied")
        status = get_glucose_status([g for g in glucose if g.timestamp <= time])

    if req.get("autosens") is not None:
        autosens = ib.build_autosens(req["autosens"])
    elif glucose:
        autosens = detect_sensitivity(profile, glucose, treatments, time)
    else:
        autosens = ib.build_autosens(None)

    if req.get("meal") is not None:
        meal = ib.build_meal(req["meal"])
    else:
        meal = calculate_meal(profile, glucose, treatments, time)

    iob_array = ib.build_iob_array(req.get("iob_data"))
    if not iob_array:
        ticks = horizon_ticks(curve_params(profile).dia, meal, autosens.ratio, time)
        iob_array = calculate_iob_array(profile, treatments, time, ticks=ticks)

    flat = req.get("flat_bgs_detected")
    if flat is None:
        flat = detect_flat_bgs(status)

    return DetermineBasalInputs(
        glucose_status=status,
        current_temp=ib.build_current_temp(req.get("current_temp")),
        iob_array=iob_array,
        profile=profile,
        autosens=autosens,
        meal=meal,
        current_time=time,
        micro_bolus_allowed=bool(req.get("micro_bolus_allowed")),
        flat_bgs_detected=bool(flat),
        tdd=ib.build_tdd(req.get("tdd")),
    )


def determine_basal(payload: Payload) -> Dict[str, Any]:
    """Dosing recommendation; the result always carries either a decision or ``error``."""
    naming = "legacy"
    time = None
    try:
        req = _load(payload)
        naming = _naming(req)
        time = _time(req)
        inputs = build_determine_basal_inputs(req)
    except INPUT_ERRORS as e:
        logger.warning("determine-basal request rejected: %s", e)
        return rw.write_result(error_result(str(e), time), naming)
    return rw.write_result(_determine_basal(inputs), naming)


def to_json(result: Dict[str, Any]) -> str:
    return json.dumps(result, sort_keys=True)
