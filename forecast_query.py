from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Tuple

LOGGER = logging.getLogger("gridcast.forecast_query")

OPERATOR_PREFIX = "$"
COMPARISON_OPERATORS = ("$lt", "$lte", "$gt", "$gte")
RESAMPLE_FIELDS = ("oLon", "oLat", "sLon", "sLat", "dLon", "dLat")
PROXIMITY_FIELDS = ("centerLon", "centerLat", "distance")
FALSY_STRINGS = {"false", "0", "no", "off", ""}
LOCATOR_FIELD = "convertedFilePath"


class NoForecastAvailableError(LookupError):
    """Raised when no forecast time can satisfy a request."""


@dataclass(frozen=True)
class ResampleParams:
    origin: Tuple[float, float]
    step: Tuple[float, float]
    size: Tuple[int, int]


@dataclass
class QueryParams:
    """Request-scoped values pulled out of a query before it reaches storage."""

    resample: ResampleParams | None = None
    paginate: bool | None = None


def parse_instant(value) -> datetime | None:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_number(value) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def get_nearest_forecast_time(instant, catalog) -> datetime:
    """Return the catalog forecast time closest to ``instant``.

    Ties go to the earlier forecast time. ``catalog`` is either an object
    exposing ``list_forecast_times()`` or a plain sequence of instants.
    """
    target = parse_instant(instant)
    if target is None:
        raise ValueError(f"Invalid forecast instant: {instant!r}")
    list_times = getattr(catalog, "list_forecast_times", None)
    raw_times = list_times() if callable(list_times) else (catalog or [])
    times = [t for t in (parse_instant(v) for v in raw_times) if t is not None]
    if not times:
        raise NoForecastAvailableError(f"No forecast time available for {target.isoformat()}")
    return min(times, key=lambda t: (abs((t - target).total_seconds()), t))


def normalize_query(
    query: Dict[str, object] | None,
    catalog=None,
    element=None,
    tile: bool = False,
) -> Tuple[Dict[str, object], QueryParams]:
    """Canonicalize a client query.

    Returns the query to hand to storage and the request-scoped parameters
    that storage must never see. Values that cannot be coerced are left as
    they are so that storage rejects them.
    """
    canonical: Dict[str, object] = copy.deepcopy(query) if query else {}
    params = QueryParams()

    _coerce_comparisons(canonical)
    _marshall_time(canonical, catalog)
    _marshall_geometry(canonical)
    _rewrite_proximity(canonical)
    params.resample = _extract_resample(canonical)
    if tile and not canonical.get("geometry"):
        canonical["geometry"] = {"$exists": False}
    if _is_falsy_flag(canonical.get("$paginate", True)):
        params.paginate = False
        del canonical["$paginate"]
    _select_locator(canonical, element)
    return canonical, params


def _coerce_comparisons(node) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            if isinstance(value, (dict, list)):
                _coerce_comparisons(value)
            elif key in COMPARISON_OPERATORS and isinstance(value, str):
                node[key] = _coerce_comparison_value(value)
    elif isinstance(node, list):
        for value in node:
            _coerce_comparisons(value)


def _coerce_comparison_value(value: str):
    number = parse_number(value)
    if number is not None:
        return number
    instant = parse_instant(value)
    if instant is not None:
        return instant
    return value


def _marshall_time(query: Dict[str, object], catalog) -> None:
    for field in ("runTime", "forecastTime"):
        value = query.get(field)
        if isinstance(value, str):
            instant = parse_instant(value)
            if instant is not None:
                query[field] = instant

    if query.get("time") is not None:
        instant = parse_instant(query["time"])
        if instant is None:
            LOGGER.debug("Leaving unparseable time in query value=%r", query["time"])
        else:
            query["forecastTime"] = get_nearest_forecast_time(instant, catalog)
            del query["time"]

    if query.get("from") is not None and query.get("to") is not None:
        start = parse_instant(query["from"])
        end = parse_instant(query["to"])
        if start is None or end is None:
            LOGGER.debug("Leaving unparseable time range in query from=%r to=%r", query["from"], query["to"])
        else:
            query["forecastTime"] = {
                "$gte": get_nearest_forecast_time(start, catalog),
                "$lte": get_nearest_forecast_time(end, catalog),
            }
            del query["from"]
            del query["to"]


def _marshall_geometry(query: Dict[str, object]) -> None:
    geometry = query.get("geometry")
    if not isinstance(geometry, dict):
        return
    operator = next((key for key in geometry if key.startswith(OPERATOR_PREFIX)), None)
    if operator is None or not isinstance(geometry[operator], dict):
        return
    arguments = geometry[operator]
    for key, value in arguments.items():
        if not key.startswith(OPERATOR_PREFIX):
            continue
        if isinstance(value, dict) and isinstance(value.get("coordinates"), list):
            value["coordinates"] = [_coerce_coordinate(c) for c in value["coordinates"]]
        elif isinstance(value, str):
            number = parse_number(value)
            if number is not None:
                arguments[key] = number


def _coerce_coordinate(value):
    if isinstance(value, list):
        return [_coerce_coordinate(v) for v in value]
    if isinstance(value, str):
        number = parse_number(value)
        return value if number is None else number
    return value


def _rewrite_proximity(query: Dict[str, object]) -> None:
    if any(query.get(field) is None for field in PROXIMITY_FIELDS):
        return
    lon, lat, distance = (parse_number(query[field]) for field in PROXIMITY_FIELDS)
    if lon is None or lat is None or distance is None:
        LOGGER.debug("Leaving non-numeric proximity fields in query")
        return
    for field in PROXIMITY_FIELDS:
        del query[field]
    query["geometry"] = {
        "$near": {
            "$geometry": {"type": "Point", "coordinates": [lon, lat]},
            "$maxDistance": distance,
        }
    }


def _extract_resample(query: Dict[str, object]) -> ResampleParams | None:
    if any(query.get(field) is None for field in RESAMPLE_FIELDS):
        return None
    values = {field: parse_number(query[field]) for field in RESAMPLE_FIELDS}
    if any(value is None for value in values.values()):
        LOGGER.debug("Leaving non-numeric resampling fields in query")
        return None
    if any(values[field] <= 0 or int(values[field]) != values[field] for field in ("dLon", "dLat")):
        LOGGER.debug("Leaving non-integral resampling size in query dLon=%r dLat=%r", values["dLon"], values["dLat"])
        return None
    if values["sLon"] <= 0 or values["sLat"] <= 0:
        LOGGER.debug("Leaving non-positive resampling step in query sLon=%r sLat=%r", values["sLon"], values["sLat"])
        return None
    for field in RESAMPLE_FIELDS:
        del query[field]
    return ResampleParams(
        origin=(float(values["oLon"]), float(values["oLat"])),
        step=(float(values["sLon"]), float(values["sLat"])),
        size=(int(values["dLon"]), int(values["dLat"])),
    )


def _is_falsy_flag(value) -> bool:
    if value is False:
        return True
    return isinstance(value, str) and value.strip().lower() in FALSY_STRINGS


def _select_locator(query: Dict[str, object], element) -> None:
    selection = query.get("$select")
    if selection is None or element is None or not getattr(element, "is_external", False):
        return
    if isinstance(selection, str):
        selection = [selection]
    selection = list(selection)
    if LOCATOR_FIELD not in selection:
        selection.append(LOCATOR_FIELD)
    query["$select"] = selection


def selected_fields(query: Dict[str, object] | None) -> List[str]:
    if not query or query.get("$select") is None:
        return []
    selection = query["$select"]
    if isinstance(selection, str):
        return [selection]
    return list(selection)


def is_data_selected(query: Dict[str, object] | None) -> bool:
    return "data" in selected_fields(query)
