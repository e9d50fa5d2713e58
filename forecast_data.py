from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor, wait
from io import BytesIO
import json
import logging
import math
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np
import requests

from forecast_query import (
    LOCATOR_FIELD,
    NoForecastAvailableError,
    QueryParams,
    get_nearest_forecast_time,
    is_data_selected,
    normalize_query,
    parse_instant,
    parse_number,
)
from grid import Grid

FORECAST_PATH = os.getenv("FORECAST_PATH", "forecasts")
CONFIG_PATH = os.getenv("GRIDCAST_CONFIG", "").strip()
INDEX_PATH = os.getenv("GRIDCAST_INDEX", "").strip()
BLOB_BASE_URL = os.getenv("GRIDCAST_BLOB_URL", "").strip()
STAGING_DIR = os.getenv("GRIDCAST_STAGING_DIR", "cache/staging")
MATERIALIZE_WORKERS = int(os.getenv("MATERIALIZE_WORKERS", "4"))
BLOB_FETCH_RETRIES = int(os.getenv("BLOB_FETCH_RETRIES", "3"))
BLOB_FETCH_BASE_BACKOFF_SECONDS = 0.4
BLOB_FETCH_TIMEOUT_SECONDS = 30
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 50
INTERNAL_FIELDS = ("filePath", "convertedFilePath")
TIME_FIELDS = ("runTime", "forecastTime")
DATA_STORES = {"db", "fs", "blob"}
EXTERNAL_DATA_STORES = {"fs", "blob"}
EARTH_RADIUS_M = 6371008.8
LOGGER = logging.getLogger("gridcast.forecast_data")


class DataUnavailableError(RuntimeError):
    """Raised when raster payloads cannot be fetched or decoded."""

    def __init__(self, message: str, failures: List[Dict[str, object]] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or []


class GeneralConfigurationError(RuntimeError):
    """Raised when a forecast element is configured against an incompatible backend."""


class InvalidQueryError(ValueError):
    """Raised by the item index for query values it cannot evaluate."""


class BlobFetchError(OSError):
    """Raised when a payload cannot be staged from the blob store."""


@dataclass(frozen=True)
class ElementMeta:
    name: str
    label: str = ""
    unit: str = ""
    data_store: str = "fs"

    @property
    def is_external(self) -> bool:
        return self.data_store in EXTERNAL_DATA_STORES


@dataclass(frozen=True)
class ForecastModel:
    name: str
    label: str
    bounds: Tuple[float, float, float, float]
    origin: Tuple[float, float]
    size: Tuple[int, int]
    resolution: Tuple[float, float]
    run_interval: int = 6 * 3600
    interval: int = 3 * 3600
    lower_limit: int = 0
    upper_limit: int = 240 * 3600
    elements: Tuple[ElementMeta, ...] = ()

    def element(self, element_name: str) -> ElementMeta:
        for element in self.elements:
            if element.name == element_name:
                return element
        raise ValueError(f"Unknown element {element_name} for forecast {self.name}")


DEFAULT_FORECASTS = (
    ForecastModel(
        name="gfs-world",
        label="GFS - 0.5°",
        bounds=(-180.0, -90.0, 180.0, 90.0),
        origin=(-180.0, 90.0),
        size=(720, 360),
        resolution=(0.5, 0.5),
        run_interval=6 * 3600,
        interval=3 * 3600,
        upper_limit=240 * 3600,
        elements=(
            ElementMeta(name="temperature", label="Temperature", unit="K"),
            ElementMeta(name="u-wind", label="Wind - U component", unit="m/s"),
            ElementMeta(name="v-wind", label="Wind - V component", unit="m/s"),
            ElementMeta(name="precipitations", label="Precipitations", unit="mm"),
        ),
    ),
    ForecastModel(
        name="arpege-europe",
        label="ARPEGE - 0.1°",
        bounds=(-32.0, 20.0, 42.0, 72.0),
        origin=(-32.0, 72.0),
        size=(740, 520),
        resolution=(0.1, 0.1),
        run_interval=6 * 3600,
        interval=3600,
        upper_limit=102 * 3600,
        elements=(
            ElementMeta(name="temperature", label="Temperature", unit="K"),
            ElementMeta(name="u-wind", label="Wind - U component", unit="m/s"),
            ElementMeta(name="v-wind", label="Wind - V component", unit="m/s"),
        ),
    ),
)


class ForecastCatalog:
    """Read-only, sorted list of forecast times."""

    def __init__(self, times=()) -> None:
        parsed = {instant for instant in (parse_instant(t) for t in times) if instant is not None}
        self._times: Tuple[datetime, ...] = tuple(sorted(parsed))

    def list_forecast_times(self) -> List[datetime]:
        return list(self._times)

    def __len__(self) -> int:
        return len(self._times)

    @classmethod
    def from_items(cls, items) -> "ForecastCatalog":
        return cls(item.get("forecastTime") for item in items)

    @classmethod
    def from_schedule(cls, forecast: ForecastModel, now: datetime | None = None) -> "ForecastCatalog":
        now_utc = parse_instant(now) if now is not None else datetime.now(timezone.utc)
        run_hours = max(1, forecast.run_interval // 3600)
        latest_run = now_utc.replace(hour=(now_utc.hour // run_hours) * run_hours, minute=0, second=0, microsecond=0)
        # Latest run may still be in production, step back one run.
        latest_run = latest_run - timedelta(seconds=forecast.run_interval)
        step = max(1, forecast.interval)
        first = int(math.ceil(forecast.lower_limit / step))
        last = forecast.upper_limit // step
        return cls(latest_run + timedelta(seconds=k * step) for k in range(first, last + 1))


class FileByteStore:
    """Raster payloads stored on the local file system."""

    def __init__(self, root) -> None:
        self.root = Path(root)

    def resolve(self, locator: str) -> Path:
        path = Path(locator)
        return path if path.is_absolute() else self.root / path

    def fetch(self, locator: str) -> bytes:
        return self.resolve(locator).read_bytes()


class HttpBlobStore:
    """Blob store reached over HTTP; payloads are staged to local files before reading."""

    def __init__(
        self,
        base_url: str,
        staging_dir=STAGING_DIR,
        retries: int = BLOB_FETCH_RETRIES,
        session: requests.Session | None = None,
        timeout: float = BLOB_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.staging_dir = Path(staging_dir)
        self.retries = max(1, int(retries))
        self.timeout = timeout
        self._session = session or requests.Session()

    def url_for(self, locator: str) -> str:
        return f"{self.base_url}/{str(locator).lstrip('/')}"

    def stage(self, locator: str) -> Path:
        url = self.url_for(locator)
        last_exc: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                response = self._session.get(url, timeout=self.timeout)
                response.raise_for_status()
                return self._write_staged(locator, response.content)
            except requests.RequestException as exc:
                last_exc = exc
                status = getattr(getattr(exc, "response", None), "status_code", None)
                if status == 404 or attempt >= self.retries:
                    break
                time.sleep(BLOB_FETCH_BASE_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise BlobFetchError(f"Blob fetch failed for {url} after {attempt} attempts: {last_exc}") from last_exc

    def read(self, local_path) -> bytes:
        return Path(local_path).read_bytes()

    def release(self, local_path) -> None:
        try:
            Path(local_path).unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("Failed to release staged payload path=%s", local_path)

    def _write_staged(self, locator: str, content: bytes) -> Path:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.staging_dir, suffix=Path(str(locator)).suffix + ".tmp")
        tmp_path = Path(tmp_name)
        with os.fdopen(fd, "wb") as tmp_file:
            tmp_file.write(content)
        path = tmp_path.with_suffix("")
        os.replace(tmp_path, path)
        LOGGER.debug("Staged blob locator=%s path=%s bytes=%d", locator, path, len(content))
        return path


def decode_payload(raw: bytes, locator: str) -> np.ndarray:
    """Decode a raster payload into a flat float array, NaN marking missing samples."""
    if str(locator).lower().endswith(".npz"):
        with np.load(BytesIO(raw)) as payload:
            return np.asarray(payload["field"], dtype=np.float64).reshape(-1)
    payload = json.loads(raw)
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        raise ValueError("Raster payload does not hold a sample list")
    return np.asarray(payload, dtype=np.float64).reshape(-1)


def to_client_samples(values) -> List[float | None]:
    flat = np.asarray(values, dtype=np.float64).reshape(-1)
    return [v if math.isfinite(v) else None for v in flat.tolist()]


class MemoryItemIndex:
    """In-memory storage query layer over item metadata."""

    def __init__(self, items=(), page_size: int = DEFAULT_PAGE_SIZE, max_page_size: int = MAX_PAGE_SIZE) -> None:
        self.page_size = page_size
        self.max_page_size = max_page_size
        self._items: List[Dict[str, object]] = []
        self._guard = threading.Lock()
        for item in items:
            self.add(item)

    @property
    def items(self) -> List[Dict[str, object]]:
        with self._guard:
            return list(self._items)

    def add(self, item: Dict[str, object]) -> None:
        record = dict(item)
        for field in TIME_FIELDS:
            instant = parse_instant(record.get(field))
            if instant is not None:
                record[field] = instant
        with self._guard:
            self._items.append(record)

    def find(self, query: Dict[str, object] | None, paginate: bool | None = None):
        query = query or {}
        for key in query:
            if key.startswith("$") and key not in {"$select", "$sort", "$limit", "$skip", "$paginate"}:
                raise InvalidQueryError(f"Unsupported query operator: {key}")

        matches = [item for item in self.items if self._matches(item, query)]
        matches = self._sort(matches, query.get("$sort"))
        total = len(matches)
        skip = self._parse_count(query.get("$skip"), "$skip") or 0
        limit = self._parse_count(query.get("$limit"), "$limit")
        if paginate is not False:
            limit = min(limit if limit is not None else self.page_size, self.max_page_size)
        window = matches[skip:] if limit is None else matches[skip : skip + limit]
        records = [self._project(item, query.get("$select")) for item in window]
        if paginate is False:
            return records
        return {"total": total, "limit": limit, "skip": skip, "data": records}

    def _matches(self, item: Dict[str, object], query: Dict[str, object]) -> bool:
        for field, condition in query.items():
            if field.startswith("$"):
                continue
            value = item.get(field)
            if isinstance(condition, dict) and any(str(k).startswith("$") for k in condition):
                for operator, operand in condition.items():
                    if not self._apply(field, value, operator, operand):
                        return False
            elif value != condition:
                return False
        return True

    def _apply(self, field: str, value, operator: str, operand) -> bool:
        if operator == "$exists":
            return (value is not None) == bool(operand)
        if operator == "$ne":
            return value != operand
        if operator in ("$in", "$nin"):
            if not isinstance(operand, (list, tuple, set)):
                raise InvalidQueryError(f"{operator} on {field} expects a list, got {operand!r}")
            parsed = [self._parse_operand(field, v) for v in operand]
            return (value in parsed) == (operator == "$in")
        if operator == "$near":
            return self._near(field, value, operand)
        if operator not in ("$lt", "$lte", "$gt", "$gte"):
            raise InvalidQueryError(f"Unsupported operator {operator} on {field}")
        if value is None:
            return False
        try:
            if operator == "$lt":
                return value < operand
            if operator == "$lte":
                return value <= operand
            if operator == "$gt":
                return value > operand
            return value >= operand
        except TypeError as exc:
            raise InvalidQueryError(f"Cannot compare {field} with {operand!r}") from exc

    @staticmethod
    def _parse_operand(field: str, operand):
        if field in TIME_FIELDS:
            instant = parse_instant(operand)
            if instant is not None:
                return instant
        return operand

    @staticmethod
    def _near(field: str, value, operand) -> bool:
        try:
            lon, lat = (float(v) for v in operand["$geometry"]["coordinates"])
            max_distance = float(operand.get("$maxDistance", math.inf))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidQueryError(f"Invalid $near predicate on {field}: {operand!r}") from exc
        if not isinstance(value, dict) or value.get("type") != "Point":
            return False
        item_lon, item_lat = (float(v) for v in value["coordinates"][:2])
        lat1, lat2 = np.radians(lat), np.radians(item_lat)
        dlat = lat2 - lat1
        dlon = np.radians(item_lon - lon)
        a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
        distance = 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(min(1.0, float(a))))
        return float(distance) <= max_distance

    @staticmethod
    def _sort(items: List[Dict[str, object]], sort_spec) -> List[Dict[str, object]]:
        if not sort_spec:
            return items
        if not isinstance(sort_spec, dict):
            raise InvalidQueryError(f"Invalid $sort: {sort_spec!r}")
        ordered = list(items)
        for field, direction in reversed(list(sort_spec.items())):
            number = parse_number(direction)
            if number not in (1, -1):
                raise InvalidQueryError(f"Invalid $sort direction for {field}: {direction!r}")
            present = [item for item in ordered if item.get(field) is not None]
            missing = [item for item in ordered if item.get(field) is None]
            try:
                present.sort(key=lambda item: item[field], reverse=number == -1)
            except TypeError as exc:
                raise InvalidQueryError(f"Cannot sort on {field}") from exc
            ordered = present + missing
        return ordered

    @staticmethod
    def _parse_count(value, name: str) -> int | None:
        if value is None:
            return None
        number = parse_number(value)
        if number is None or number < 0 or int(number) != number:
            raise InvalidQueryError(f"Invalid {name}: {value!r}")
        return int(number)

    @staticmethod
    def _project(item: Dict[str, object], selection) -> Dict[str, object]:
        if selection is None:
            return dict(item)
        fields = {selection} if isinstance(selection, str) else set(selection)
        fields.add("id")
        return {key: value for key, value in item.items() if key in fields}


class ForecastElementService:
    """One forecast element: its geometry, storage and item index."""

    def __init__(
        self,
        forecast: ForecastModel,
        element: ElementMeta,
        items=(),
        file_store: FileByteStore | None = None,
        blob_store: HttpBlobStore | None = None,
        catalog: ForecastCatalog | None = None,
        executor: Executor | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if element.data_store not in DATA_STORES:
            raise GeneralConfigurationError(
                f"Unknown data store {element.data_store!r} for {forecast.name}/{element.name}"
            )
        if element.data_store == "blob" and blob_store is None:
            raise GeneralConfigurationError(
                f"Blob data store for {forecast.name}/{element.name} requires a blob backend (GRIDCAST_BLOB_URL)"
            )
        self.forecast = forecast
        self.element = element
        self.file_store = file_store if file_store is not None else FileByteStore(FORECAST_PATH)
        self.blob_store = blob_store
        self.index = MemoryItemIndex(items)
        self.executor = executor
        self.logger = logger or LOGGER
        self._catalog = catalog

    @property
    def name(self) -> str:
        return f"{self.forecast.name}/{self.element.name}"

    def forecast_catalog(self) -> ForecastCatalog:
        if self._catalog is not None:
            return self._catalog
        from_items = ForecastCatalog.from_items(self.index.items)
        if len(from_items):
            return from_items
        return ForecastCatalog.from_schedule(self.forecast)

    def get_nearest_forecast_time(self, instant) -> datetime:
        return get_nearest_forecast_time(instant, self.forecast_catalog())

    def find(self, raw_query: Dict[str, object] | None, tile: bool = False, partial: bool = False):
        query, params = normalize_query(
            raw_query,
            catalog=self.forecast_catalog(),
            element=self.element,
            tile=tile,
        )
        self.logger.debug("Query %s normalized=%s resample=%s", self.name, query, params.resample)
        result = self.index.find(query, paginate=params.paginate)
        if isinstance(result, dict):
            page = dict(result)
            page["data"] = self.materialize(result["data"], query, params, partial=partial)
            return page
        return self.materialize(result, query, params, partial=partial)

    def value_at(self, instant, lon: float, lat: float) -> Dict[str, object]:
        if parse_instant(instant) is None:
            raise ValueError(f"Invalid forecast time: {instant!r}")
        raw_query = {
            "time": instant,
            "$select": ["forecastTime", "runTime", "data"],
            "$sort": {"runTime": -1},
        }
        query, params = normalize_query(raw_query, catalog=self.forecast_catalog(), element=self.element)
        matches = self.index.find(query, paginate=False)
        if not matches:
            raise NoForecastAvailableError(
                f"No {self.name} forecast stored for {query.get('forecastTime', instant)}"
            )
        item = self.materialize(matches[0], query, params)
        if item.get("data") is None:
            raise DataUnavailableError(f"No {self.name} data for forecast time {item.get('forecastTime')}")
        grid = self.grid_for(item)
        value = grid.interpolate(lon, lat)
        return {
            "forecastTime": item.get("forecastTime"),
            "runTime": item.get("runTime"),
            "lon": lon,
            "lat": lat,
            "value": value if math.isfinite(value) else None,
        }

    def grid_for(self, record: Dict[str, object]) -> Grid:
        try:
            return Grid.from_forecast(self.forecast, record["data"])
        except (TypeError, ValueError) as exc:
            raise DataUnavailableError(
                f"Payload of {self.name} at {_format_instant(record.get('forecastTime'))} does not fit the forecast grid: {exc}"
            ) from exc

    def materialize(self, items, query: Dict[str, object] | None, params: QueryParams | None = None, partial: bool = False):
        return materialize(items, query, params, self, partial=partial)

    def load_payloads(self, records: List[Dict[str, object]], partial: bool = False) -> None:
        targets = [record for record in records if record.get(LOCATOR_FIELD)]
        if not targets:
            return
        staged: List[Path] = []
        staged_guard = threading.Lock()

        def _load(record: Dict[str, object]) -> np.ndarray:
            locator = str(record[LOCATOR_FIELD])
            if self.element.data_store == "blob":
                local_path = self.blob_store.stage(locator)
                with staged_guard:
                    staged.append(local_path)
                raw = self.blob_store.read(local_path)
            else:
                raw = self.file_store.fetch(locator)
            return decode_payload(raw, locator)

        outcomes: List[Tuple[Dict[str, object], np.ndarray | None, Exception | None]] = []
        try:
            if self.executor is None:
                for record in targets:
                    try:
                        outcomes.append((record, _load(record), None))
                    except Exception as exc:
                        outcomes.append((record, None, exc))
            else:
                futures = [(record, self.executor.submit(_load, record)) for record in targets]
                wait([future for _record, future in futures])
                for record, future in futures:
                    exc = future.exception()
                    outcomes.append((record, None if exc else future.result(), exc))
        finally:
            # Every read of the batch is done here, staged copies can go.
            if self.blob_store is not None:
                for path in staged:
                    self.blob_store.release(path)

        failures: List[Dict[str, object]] = []
        for record, values, exc in outcomes:
            if exc is None:
                record["data"] = values
                continue
            if not isinstance(exc, (OSError, EOFError, KeyError, ValueError, TypeError)):
                raise exc
            failure = self._report_failure(record, exc)
            failures.append(failure)
            if partial:
                record.pop("data", None)
                record["error"] = {"type": "DataUnavailable", "message": failure["message"]}

        if failures and not partial:
            raise DataUnavailableError(
                f"Cannot read {len(failures)} of {len(targets)} {self.name} forecast payloads",
                failures=failures,
            )

    def _report_failure(self, record: Dict[str, object], exc: Exception) -> Dict[str, object]:
        message = f"Cannot read converted {self.name} forecast"
        forecast_time = record.get("forecastTime")
        run_time = record.get("runTime")
        if forecast_time is not None:
            message += f" at {_format_instant(forecast_time)}"
        if run_time is not None:
            message += f" for run {_format_instant(run_time)}"
        self.logger.error("%s: %s", message, exc)
        self.logger.debug("Input payload was locator=%s", record.get(LOCATOR_FIELD))
        return {
            "forecast": self.forecast.name,
            "element": self.element.name,
            "forecastTime": forecast_time,
            "runTime": run_time,
            "message": message,
        }


def materialize(items, query: Dict[str, object] | None, params: QueryParams | None, service: ForecastElementService, partial: bool = False):
    """Turn stored items into client-safe records.

    Loads payloads for external storage when ``data`` is selected, resamples
    them when resampling parameters are given, strips storage locators and
    drops ``data`` unless it was selected. ``items`` may be a single item or
    a list; the result has the same shape.
    """
    is_list = isinstance(items, list)
    records = [dict(item) for item in (items if is_list else [items])]
    data_selected = is_data_selected(query)

    if service.element.is_external:
        if data_selected:
            service.load_payloads(records, partial=partial)
        for record in records:
            for field in INTERNAL_FIELDS:
                record.pop(field, None)

    if not data_selected:
        for record in records:
            record.pop("data", None)
    else:
        resample = params.resample if params is not None else None
        for record in records:
            if record.get("data") is None:
                continue
            if resample is not None:
                grid = service.grid_for(record)
                values = grid.resample(resample.origin, resample.size, resample.step)
                record["data"] = values
                record.update(Grid.get_min_max(values))
            record["data"] = to_client_samples(record["data"])

    return records if is_list else records[0]


class ForecastStore:
    """Process-wide registry of forecast element services.

    Byte stores and the materialization worker pool are shared by every
    element; forecast geometry is immutable and read without locking.
    """

    def __init__(
        self,
        forecasts=None,
        items: Dict[str, List[Dict[str, object]]] | None = None,
        forecast_path=FORECAST_PATH,
        blob_url: str = BLOB_BASE_URL,
        staging_dir=STAGING_DIR,
        workers: int = MATERIALIZE_WORKERS,
    ) -> None:
        if forecasts is None:
            forecasts = load_forecast_models(CONFIG_PATH) if CONFIG_PATH else DEFAULT_FORECASTS
        if items is None:
            items = load_item_index(INDEX_PATH) if INDEX_PATH else {}
        self._forecasts: Dict[str, ForecastModel] = {forecast.name: forecast for forecast in forecasts}
        self._file_store = FileByteStore(forecast_path)
        self._blob_store = HttpBlobStore(blob_url, staging_dir=staging_dir) if blob_url else None
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="materialize")
        self._services: Dict[Tuple[str, str], ForecastElementService] = {}
        for forecast in self._forecasts.values():
            for element in forecast.elements:
                self._services[(forecast.name, element.name)] = ForecastElementService(
                    forecast,
                    element,
                    items=items.get(f"{forecast.name}/{element.name}", []),
                    file_store=self._file_store,
                    blob_store=self._blob_store,
                    executor=self._executor,
                    logger=logging.getLogger(f"gridcast.elements.{forecast.name}.{element.name}"),
                )
        LOGGER.info(
            "Forecast store ready forecasts=%d elements=%d blob=%s",
            len(self._forecasts),
            len(self._services),
            "enabled" if self._blob_store else "disabled",
        )

    @property
    def forecast_models(self) -> List[ForecastModel]:
        return [self._forecasts[k] for k in sorted(self._forecasts.keys())]

    def forecast_model(self, forecast_name: str) -> ForecastModel:
        forecast = self._forecasts.get(forecast_name)
        if forecast is None:
            raise ValueError(f"Unknown forecast: {forecast_name}")
        return forecast

    def service(self, forecast_name: str, element_name: str) -> ForecastElementService:
        forecast = self.forecast_model(forecast_name)
        service = self._services.get((forecast.name, element_name))
        if service is None:
            raise ValueError(f"Unknown element {element_name} for forecast {forecast_name}")
        return service

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        LOGGER.info("Stopped materialization workers")


def load_forecast_models(path) -> Tuple[ForecastModel, ...]:
    try:
        payload = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise GeneralConfigurationError(f"Cannot read forecast configuration {path}: {exc}") from exc

    forecasts = []
    for entry in payload.get("forecasts", []):
        try:
            elements = tuple(
                ElementMeta(
                    name=str(element["name"]),
                    label=str(element.get("label", element["name"])),
                    unit=str(element.get("unit", "")),
                    data_store=str(element.get("dataStore", "fs")),
                )
                for element in entry.get("elements", [])
            )
            forecasts.append(
                ForecastModel(
                    name=str(entry["name"]),
                    label=str(entry.get("label", entry["name"])),
                    bounds=tuple(float(v) for v in entry["bounds"]),
                    origin=tuple(float(v) for v in entry["origin"]),
                    size=tuple(int(v) for v in entry["size"]),
                    resolution=tuple(float(v) for v in entry["resolution"]),
                    run_interval=int(entry.get("runInterval", 6 * 3600)),
                    interval=int(entry.get("interval", 3 * 3600)),
                    lower_limit=int(entry.get("lowerLimit", 0)),
                    upper_limit=int(entry.get("upperLimit", 240 * 3600)),
                    elements=elements,
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise GeneralConfigurationError(f"Invalid forecast entry in {path}: {exc}") from exc
    return tuple(forecasts)


def load_item_index(path) -> Dict[str, List[Dict[str, object]]]:
    try:
        payload = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError):
        LOGGER.warning("Failed to read item index path=%s", path)
        return {}
    if not isinstance(payload, dict):
        LOGGER.warning("Ignoring item index without element mapping path=%s", path)
        return {}
    return {str(key): list(value) for key, value in payload.items() if isinstance(value, list)}


def _format_instant(value) -> str:
    instant = parse_instant(value)
    if instant is None:
        return str(value)
    return instant.isoformat().replace("+00:00", "Z")
