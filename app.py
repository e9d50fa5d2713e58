from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from forecast_data import DataUnavailableError, ForecastStore
from forecast_query import NoForecastAvailableError

QUERY_KEY_PATTERN = re.compile(r"\[([^\]]*)\]")
LIST_FIELDS = {"$select"}


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("GRIDCAST_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("gridcast")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("GRIDCAST_LOG_FILE", "logs/gridcast.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Gridcast Forecast API")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("GRIDCAST_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:8000",
        "http://localhost:8000",
        "http://127.0.0.1:8080",
        "http://localhost:8080",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

store = ForecastStore()


def parse_query_items(items: Iterable[Tuple[str, str]]) -> Dict[str, object]:
    """Build a nested query from query-string pairs.

    ``forecastTime[$gte]=...`` nests under ``forecastTime``, ``$select[]`` and
    repeated keys collect into lists.
    """
    query: Dict[str, object] = {}
    for key, value in items:
        base = key.split("[", 1)[0]
        path = [base] + QUERY_KEY_PATTERN.findall(key[len(base) :])
        appends = path[-1] == "" or path[-1].isdigit()
        if appends:
            path = path[:-1]
        node = query
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        leaf = path[-1]
        existing = node.get(leaf)
        if appends or leaf in LIST_FIELDS:
            if isinstance(existing, list):
                existing.append(value)
            else:
                node[leaf] = [value] if existing is None else [existing, value]
        elif existing is None:
            node[leaf] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            node[leaf] = [existing, value]
    return query


def _service_or_404(forecast_name: str, element_name: str):
    try:
        return store.service(forecast_name, element_name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _run_query(forecast_name: str, element_name: str, request: Request, tile: bool) -> object:
    service = _service_or_404(forecast_name, element_name)
    raw_query = parse_query_items(request.query_params.multi_items())
    try:
        return service.find(raw_query, tile=tile)
    except NoForecastAvailableError as exc:
        LOGGER.info("No forecast for query element=%s: %s", service.name, exc)
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DataUnavailableError as exc:
        LOGGER.warning("Query data unavailable element=%s: %s", service.name, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except (ValueError, IndexError) as exc:
        LOGGER.warning("Query invalid element=%s: %s", service.name, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    store.shutdown()


@app.get("/api/forecasts")
def forecasts() -> Dict[str, object]:
    payload = []
    for forecast in store.forecast_models:
        elements = []
        for element in forecast.elements:
            service = store.service(forecast.name, element.name)
            elements.append(
                {
                    "name": element.name,
                    "label": element.label,
                    "unit": element.unit,
                    "dataStore": element.data_store,
                    "forecastTimes": service.forecast_catalog().list_forecast_times(),
                }
            )
        payload.append(
            {
                "name": forecast.name,
                "label": forecast.label,
                "bounds": list(forecast.bounds),
                "origin": list(forecast.origin),
                "size": list(forecast.size),
                "resolution": list(forecast.resolution),
                "runInterval": forecast.run_interval,
                "interval": forecast.interval,
                "elements": elements,
            }
        )
    LOGGER.debug("Forecast metadata served forecasts=%d", len(payload))
    return {"forecasts": payload}


@app.get("/api/{forecast_name}/{element_name}")
def query_element(forecast_name: str, element_name: str, request: Request) -> object:
    return _run_query(forecast_name, element_name, request, tile=False)


@app.get("/api/{forecast_name}/{element_name}/tiles")
def query_tiles(forecast_name: str, element_name: str, request: Request) -> object:
    return _run_query(forecast_name, element_name, request, tile=True)


@app.get("/api/{forecast_name}/{element_name}/value")
def value(
    forecast_name: str,
    element_name: str,
    time: str = Query(...),
    lon: float = Query(...),
    lat: float = Query(..., ge=-90, le=90),
) -> Dict[str, object]:
    service = _service_or_404(forecast_name, element_name)
    try:
        payload = service.value_at(time, lon=lon, lat=lat)
    except NoForecastAvailableError as exc:
        LOGGER.info("Value request without forecast element=%s: %s", service.name, exc)
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DataUnavailableError as exc:
        LOGGER.warning("Value request data unavailable element=%s: %s", service.name, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except (ValueError, IndexError) as exc:
        LOGGER.warning("Value request invalid element=%s: %s", service.name, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if payload["value"] is not None:
        payload["value"] = round(payload["value"], 2)
    return payload


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
