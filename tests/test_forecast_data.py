import json
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import requests

from forecast_data import (
    BlobFetchError,
    DataUnavailableError,
    ElementMeta,
    FileByteStore,
    ForecastCatalog,
    ForecastElementService,
    ForecastModel,
    ForecastStore,
    GeneralConfigurationError,
    HttpBlobStore,
    InvalidQueryError,
    MemoryItemIndex,
    decode_payload,
    load_forecast_models,
    load_item_index,
)
from forecast_query import NoForecastAvailableError


def _utc(hour, day=1):
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


def _world_model(data_store="fs"):
    return ForecastModel(
        name="world",
        label="World",
        bounds=(-180.0, -90.0, 180.0, 90.0),
        origin=(-180.0, 90.0),
        size=(2, 2),
        resolution=(180.0, 90.0),
        run_interval=6 * 3600,
        interval=3 * 3600,
        upper_limit=12 * 3600,
        elements=(ElementMeta(name="temperature", label="Temperature", unit="K", data_store=data_store),),
    )


class _FakeBlobStore:
    def __init__(self, root, payloads):
        self.root = Path(root)
        self.payloads = payloads
        self.released = []
        self._guard = threading.Lock()

    def stage(self, locator):
        payload = self.payloads[locator]
        path = self.root / locator.replace("/", "_")
        path.write_bytes(payload)
        return path

    def read(self, local_path):
        return Path(local_path).read_bytes()

    def release(self, local_path):
        with self._guard:
            self.released.append(Path(local_path))
        Path(local_path).unlink(missing_ok=True)


class FileStorageServiceTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        (self.root / "t0.json").write_text(json.dumps([0, 1, 1, 0]))
        (self.root / "t3.json").write_text(json.dumps({"data": [2, 2, None, 4]}))
        (self.root / "broken.json").write_text("not json")
        self.model = _world_model()
        self.items = [
            {
                "id": 1,
                "forecastTime": "2024-01-01T00:00:00Z",
                "runTime": "2023-12-31T18:00:00Z",
                "filePath": "raw/t0.grib",
                "convertedFilePath": "t0.json",
            },
            {
                "id": 2,
                "forecastTime": "2024-01-01T03:00:00Z",
                "runTime": "2023-12-31T18:00:00Z",
                "filePath": "raw/t3.grib",
                "convertedFilePath": "t3.json",
            },
        ]

    def tearDown(self):
        self._tmp.cleanup()

    def _service(self, items=None, executor=None):
        return ForecastElementService(
            self.model,
            self.model.elements[0],
            items=self.items if items is None else items,
            file_store=FileByteStore(self.root),
            executor=executor,
        )

    def test_selected_data_is_loaded_and_locators_removed(self):
        service = self._service()
        records = service.find({"$select": ["forecastTime", "data"], "$paginate": "false"})
        self.assertEqual(len(records), 2)
        self.assertEqual(records[0], {"id": 1, "forecastTime": _utc(0), "data": [0.0, 1.0, 1.0, 0.0]})
        self.assertEqual(records[1]["data"], [2.0, 2.0, None, 4.0])
        for record in records:
            self.assertNotIn("filePath", record)
            self.assertNotIn("convertedFilePath", record)

    def test_data_absent_unless_selected(self):
        service = self._service()
        page = service.find({})
        self.assertEqual(page["total"], 2)
        self.assertEqual(page["skip"], 0)
        self.assertEqual(page["limit"], 10)
        for record in page["data"]:
            self.assertNotIn("data", record)
            self.assertNotIn("filePath", record)
            self.assertNotIn("convertedFilePath", record)

    def test_time_query_returns_single_forecast(self):
        service = self._service()
        records = service.find({"time": "2024-01-01T02:00:00Z", "$select": ["data"], "$paginate": "false"})
        self.assertEqual(records, [{"id": 2, "data": [2.0, 2.0, None, 4.0]}])

    def test_resampled_data_carries_min_max(self):
        service = self._service()
        records = service.find(
            {
                "forecastTime": "2024-01-01T00:00:00Z",
                "$select": ["data"],
                "$paginate": "false",
                "oLon": "-180",
                "oLat": "90",
                "sLon": "180",
                "sLat": "90",
                "dLon": "2",
                "dLat": "2",
            }
        )
        self.assertEqual(len(records), 1)
        np.testing.assert_allclose(records[0]["data"], [0.0, 1.0, 1.0, 0.0])
        self.assertEqual(records[0]["min"], 0.0)
        self.assertEqual(records[0]["max"], 1.0)

        coarse = service.find(
            {
                "forecastTime": "2024-01-01T00:00:00Z",
                "$select": ["data"],
                "$paginate": "false",
                "oLon": "-180",
                "oLat": "90",
                "sLon": "360",
                "sLat": "180",
                "dLon": "1",
                "dLat": "1",
            }
        )
        np.testing.assert_allclose(coarse[0]["data"], [0.5])

    def test_corrupt_payload_raises_data_unavailable(self):
        items = self.items + [
            {
                "id": 3,
                "forecastTime": "2024-01-01T06:00:00Z",
                "runTime": "2023-12-31T18:00:00Z",
                "convertedFilePath": "broken.json",
            }
        ]
        service = self._service(items=items)
        with self.assertLogs("gridcast.forecast_data", level="ERROR") as logs:
            with self.assertRaises(DataUnavailableError) as ctx:
                service.find({"$select": ["forecastTime", "runTime", "data"], "$paginate": "false"})
        self.assertEqual(len(ctx.exception.failures), 1)
        self.assertEqual(ctx.exception.failures[0]["forecastTime"], _utc(6))
        self.assertIn("Cannot read converted world/temperature forecast at 2024-01-01T06:00:00Z", logs.output[0])

    def test_partial_mode_reports_failed_items(self):
        items = self.items + [
            {
                "id": 3,
                "forecastTime": "2024-01-01T06:00:00Z",
                "runTime": "2023-12-31T18:00:00Z",
                "convertedFilePath": "missing.json",
            }
        ]
        with ThreadPoolExecutor(max_workers=2) as executor:
            service = self._service(items=items, executor=executor)
            with self.assertLogs("gridcast.forecast_data", level="ERROR"):
                records = service.find({"$select": ["data"], "$paginate": "false"}, partial=True)
        self.assertEqual(records[0]["data"], [0.0, 1.0, 1.0, 0.0])
        self.assertNotIn("data", records[2])
        self.assertEqual(records[2]["error"]["type"], "DataUnavailable")
        self.assertNotIn("convertedFilePath", records[2])

    def test_value_at_interpolates_nearest_forecast(self):
        service = self._service()
        payload = service.value_at("2024-01-01T01:00:00Z", lon=0.0, lat=0.0)
        self.assertEqual(payload["forecastTime"], _utc(0))
        self.assertAlmostEqual(payload["value"], 0.5)

    def test_value_at_without_stored_item_raises(self):
        service = ForecastElementService(
            self.model,
            self.model.elements[0],
            items=self.items,
            file_store=FileByteStore(self.root),
            catalog=ForecastCatalog([_utc(0), _utc(9)]),
        )
        with self.assertRaises(NoForecastAvailableError):
            service.value_at("2024-01-01T08:00:00Z", lon=0.0, lat=0.0)

    def test_value_at_rejects_invalid_time(self):
        with self.assertRaises(ValueError):
            self._service().value_at("later", lon=0.0, lat=0.0)


class DatabaseStorageServiceTests(unittest.TestCase):
    def test_value_at_uses_latest_run(self):
        model = _world_model(data_store="db")
        items = [
            {"forecastTime": "2024-01-01T03:00:00Z", "runTime": "2023-12-31T18:00:00Z", "data": [0, 0, 0, 0]},
            {"forecastTime": "2024-01-01T03:00:00Z", "runTime": "2024-01-01T00:00:00Z", "data": [0, 1, 1, 0]},
        ]
        service = ForecastElementService(model, model.elements[0], items=items)
        payload = service.value_at("2024-01-01T03:00:00Z", lon=-90.0, lat=-45.0)
        self.assertEqual(payload["runTime"], _utc(0))
        self.assertEqual(payload["value"], 1.0)

    def test_stored_data_is_returned_without_locator_selection(self):
        model = _world_model(data_store="db")
        service = ForecastElementService(
            model,
            model.elements[0],
            items=[{"forecastTime": "2024-01-01T03:00:00Z", "data": [1, None, 3, 4]}],
        )
        records = service.find({"$select": ["data"], "$paginate": False})
        self.assertEqual(records, [{"data": [1.0, None, 3.0, 4.0]}])


class BlobStorageServiceTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.model = _world_model(data_store="blob")

    def tearDown(self):
        self._tmp.cleanup()

    def test_staged_payloads_are_released_even_on_failure(self):
        blob_store = _FakeBlobStore(
            self.root,
            {"runs/t0.json": b"[0, 1, 1, 0]", "runs/t3.json": b"garbage"},
        )
        items = [
            {"forecastTime": "2024-01-01T00:00:00Z", "convertedFilePath": "runs/t0.json"},
            {"forecastTime": "2024-01-01T03:00:00Z", "convertedFilePath": "runs/t3.json"},
        ]
        with ThreadPoolExecutor(max_workers=2) as executor:
            service = ForecastElementService(
                self.model,
                self.model.elements[0],
                items=items,
                blob_store=blob_store,
                executor=executor,
            )
            with self.assertLogs("gridcast.forecast_data", level="ERROR"):
                with self.assertRaises(DataUnavailableError):
                    service.find({"$select": ["data"], "$paginate": "false"})

        self.assertEqual(len(blob_store.released), 2)
        for path in blob_store.released:
            self.assertFalse(path.exists())

    def test_blob_store_is_required(self):
        with self.assertRaises(GeneralConfigurationError):
            ForecastElementService(self.model, self.model.elements[0])

    def test_unknown_data_store_is_rejected(self):
        model = _world_model(data_store="s3")
        with self.assertRaises(GeneralConfigurationError):
            ForecastElementService(model, model.elements[0])


class HttpBlobStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.staging = Path(self._tmp.name) / "staging"

    def tearDown(self):
        self._tmp.cleanup()

    def _response(self, content=b"", status_code=200):
        response = MagicMock()
        response.content = content
        response.status_code = status_code
        if status_code >= 400:
            response.raise_for_status.side_effect = requests.HTTPError(response=response)
        return response

    def test_stage_writes_local_copy_and_release_removes_it(self):
        session = MagicMock()
        session.get.return_value = self._response(b"[1, 2]")
        store = HttpBlobStore("https://blobs.example.org/root/", staging_dir=self.staging, session=session)

        path = store.stage("/runs/t0.json")

        session.get.assert_called_once_with("https://blobs.example.org/root/runs/t0.json", timeout=store.timeout)
        self.assertEqual(path.parent, self.staging)
        self.assertEqual(path.suffix, ".json")
        self.assertEqual(store.read(path), b"[1, 2]")
        store.release(path)
        self.assertFalse(path.exists())
        store.release(path)

    def test_missing_blob_is_not_retried(self):
        session = MagicMock()
        session.get.return_value = self._response(status_code=404)
        store = HttpBlobStore("https://blobs.example.org", staging_dir=self.staging, retries=3, session=session)
        with self.assertRaises(BlobFetchError):
            store.stage("runs/t0.json")
        self.assertEqual(session.get.call_count, 1)

    def test_transient_errors_are_retried(self):
        session = MagicMock()
        session.get.side_effect = [requests.ConnectionError("reset"), self._response(b"[3]")]
        store = HttpBlobStore("https://blobs.example.org", staging_dir=self.staging, retries=3, session=session)
        with patch("forecast_data.time.sleep") as sleep:
            path = store.stage("runs/t0.json")
        self.assertEqual(session.get.call_count, 2)
        sleep.assert_called_once()
        self.assertEqual(path.read_bytes(), b"[3]")


class MemoryItemIndexTests(unittest.TestCase):
    def setUp(self):
        self.index = MemoryItemIndex(
            [
                {"id": i, "forecastTime": _utc(3 * i), "runTime": _utc(0), "level": i * 100}
                for i in range(8)
            ]
            + [
                {"id": 100, "geometry": {"type": "Point", "coordinates": [6.14, 46.2]}},
                {"id": 101, "geometry": {"type": "Point", "coordinates": [2.35, 48.86]}},
            ]
        )

    def test_comparison_and_membership_operators(self):
        records = self.index.find({"level": {"$gte": 200, "$lt": 500}}, paginate=False)
        self.assertEqual([r["id"] for r in records], [2, 3, 4])

        records = self.index.find(
            {"forecastTime": {"$in": ["2024-01-01T03:00:00Z", "2024-01-01T06:00:00Z"]}},
            paginate=False,
        )
        self.assertEqual([r["id"] for r in records], [1, 2])

        records = self.index.find({"level": {"$ne": 0, "$exists": True}}, paginate=False)
        self.assertEqual(len(records), 7)

        records = self.index.find({"geometry": {"$exists": False}}, paginate=False)
        self.assertEqual(len(records), 8)

    def test_near_predicate_filters_by_distance(self):
        query = {
            "geometry": {
                "$near": {
                    "$geometry": {"type": "Point", "coordinates": [6.15, 46.2]},
                    "$maxDistance": 5000,
                }
            }
        }
        records = self.index.find(query, paginate=False)
        self.assertEqual([r["id"] for r in records], [100])

    def test_pagination_sort_and_projection(self):
        page = self.index.find({"level": {"$exists": True}, "$sort": {"level": "-1"}, "$limit": "3", "$skip": "1", "$select": ["level"]})
        self.assertEqual(page["total"], 8)
        self.assertEqual(page["limit"], 3)
        self.assertEqual(page["skip"], 1)
        self.assertEqual(page["data"], [{"id": 6, "level": 600}, {"id": 5, "level": 500}, {"id": 4, "level": 400}])

        page = self.index.find({"$limit": "1000"})
        self.assertEqual(page["limit"], 50)
        self.assertEqual(len(page["data"]), 10)

        records = self.index.find({}, paginate=False)
        self.assertEqual(len(records), 10)

    def test_invalid_queries_raise(self):
        with self.assertRaises(InvalidQueryError):
            self.index.find({"$or": []})
        with self.assertRaises(InvalidQueryError):
            self.index.find({"$limit": "-1"})
        with self.assertRaises(InvalidQueryError):
            self.index.find({"forecastTime": {"$gt": "soon"}})
        with self.assertRaises(InvalidQueryError):
            self.index.find({"level": {"$regex": "1"}})
        with self.assertRaises(ValueError):
            self.index.find({"$sort": {"level": 2}})


class CatalogAndConfigTests(unittest.TestCase):
    def test_catalog_from_schedule_skips_latest_run(self):
        catalog = ForecastCatalog.from_schedule(_world_model(), now=datetime(2024, 1, 1, 13, 30, tzinfo=timezone.utc))
        self.assertEqual(catalog.list_forecast_times(), [_utc(6), _utc(9), _utc(12), _utc(15), _utc(18)])

    def test_catalog_is_sorted_and_deduplicated(self):
        catalog = ForecastCatalog(["2024-01-01T06:00:00Z", _utc(0), "2024-01-01T06:00:00+00:00", "bogus"])
        self.assertEqual(catalog.list_forecast_times(), [_utc(0), _utc(6)])

    def test_decode_npz_and_json_payloads(self):
        buffer = BytesIO()
        np.savez(buffer, field=np.array([[1.0, 2.0], [3.0, 4.0]]))
        np.testing.assert_allclose(decode_payload(buffer.getvalue(), "runs/t0.npz"), [1.0, 2.0, 3.0, 4.0])

        values = decode_payload(b'{"data": [1, null]}', "runs/t0.json")
        self.assertEqual(values[0], 1.0)
        self.assertTrue(np.isnan(values[1]))

        with self.assertRaises(ValueError):
            decode_payload(b'{"values": []}', "runs/t0.json")

    def test_load_forecast_models(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "forecasts.json"
            path.write_text(
                json.dumps(
                    {
                        "forecasts": [
                            {
                                "name": "alps",
                                "bounds": [5, 45, 11, 48],
                                "origin": [5, 48],
                                "size": [60, 30],
                                "resolution": [0.1, 0.1],
                                "interval": 3600,
                                "elements": [{"name": "temperature", "unit": "K", "dataStore": "blob"}],
                            }
                        ]
                    }
                )
            )
            (forecast,) = load_forecast_models(path)
            self.assertEqual(forecast.name, "alps")
            self.assertEqual(forecast.size, (60, 30))
            self.assertEqual(forecast.interval, 3600)
            self.assertEqual(forecast.element("temperature").data_store, "blob")

            path.write_text(json.dumps({"forecasts": [{"name": "alps"}]}))
            with self.assertRaises(GeneralConfigurationError):
                load_forecast_models(path)

    def test_load_item_index_tolerates_missing_file(self):
        with self.assertLogs("gridcast.forecast_data", level="WARNING"):
            self.assertEqual(load_item_index("/nonexistent/index.json"), {})


class ForecastStoreTests(unittest.TestCase):
    def test_services_are_registered_per_element(self):
        model = _world_model()
        store = ForecastStore(
            forecasts=[model],
            items={"world/temperature": [{"forecastTime": "2024-01-01T00:00:00Z"}]},
            blob_url="",
            workers=1,
        )
        try:
            service = store.service("world", "temperature")
            self.assertEqual(service.name, "world/temperature")
            self.assertEqual(service.forecast_catalog().list_forecast_times(), [_utc(0)])
            with self.assertRaises(ValueError):
                store.service("world", "pressure")
            with self.assertRaises(ValueError):
                store.forecast_model("moon")
        finally:
            store.shutdown()


if __name__ == "__main__":
    unittest.main()
