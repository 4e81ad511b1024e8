# tests/conftest.py
import os, json, tempfile, pytest, ee
import numpy as np

from LTGEEToolbox.ImageryService import InMemoryImageryService
from LTGEEToolbox.Masking import HARMONIZED_BANDS, QA_BAND, SENSOR_BANDS, SPACECRAFT_IDS
from LTGEEToolbox.RasterImage import RasterImage
from LTGEEToolbox.SensorCollection import landsat_dataset_id

GRID = (3, 3)


@pytest.fixture(scope="session")
def ee_initialized():
    """Initialize EE once using Service Account creds if present."""
    key_json = os.getenv("GEE_SA_KEY")
    project  = os.getenv("GEE_PROJECT")

    # Without secrets (e.g. forked PRs) only the EE-dependent tests are skipped.
    if not key_json or not project:
        pytest.skip("No Earth Engine credentials in env; skipping EE-dependent tests.")

    # Write the JSON to a temp file for ee.ServiceAccountCredentials
    with tempfile.NamedTemporaryFile("w", delete=False) as f:
        f.write(key_json)
        key_path = f.name

    email = json.loads(key_json)["client_email"]
    creds = ee.ServiceAccountCredentials(email, key_path)
    ee.Initialize(creds, project=project)

    # Quick sanity check (raises if auth failed)
    assert ee.Number(1).getInfo() == 1
    return True


def _fill(values, n_bands, shape):
    values = np.asarray(values)
    if values.ndim == 0:
        return np.full((n_bands,) + shape, values)
    if values.ndim == 1:
        return np.broadcast_to(values[:, np.newaxis, np.newaxis], (n_bands,) + shape).copy()
    return values


@pytest.fixture
def make_raw_scene():
    """
    Factory for raw Landsat C2 SR scenes: native SR bands (digital numbers) plus QA_PIXEL.

    `dn` is a scalar, one value per SR band, or a full (6, rows, cols) array; `qa` a scalar or (rows, cols) array.
    """

    def _make(sensor, date, dn=20000, qa=0, scene_id=None, shape=GRID, mask=None):
        sr = _fill(dn, 6, shape).astype(np.uint16)
        qa = np.broadcast_to(np.asarray(qa, dtype=np.uint16), shape)
        bands = np.concatenate([sr, qa[np.newaxis]])
        if scene_id is None:
            scene_id = f"{sensor}_046028_{date.replace('-', '')}"
        return RasterImage(
            bands,
            band_names=list(SENSOR_BANDS[sensor]) + [QA_BAND],
            mask=mask,
            time_start=date,
            sensor=sensor,
            scene_id=scene_id,
            properties={"SPACECRAFT_ID": SPACECRAFT_IDS[sensor]},
        )

    return _make


@pytest.fixture
def make_image():
    """
    Factory for harmonized six-band images (fixed-point reflectance).
    """

    def _make(values, mask=None, date="2017-07-01", shape=GRID, scene_id=None):
        bands = _fill(values, len(HARMONIZED_BANDS), shape).astype(np.uint16)
        return RasterImage(
            bands,
            band_names=HARMONIZED_BANDS,
            mask=mask,
            time_start=date,
            sensor="LC08",
            scene_id=scene_id,
        )

    return _make


@pytest.fixture
def make_service(make_raw_scene):
    """
    Factory for an InMemoryImageryService from {sensor: [date, ...]} with one raw scene per date.
    """

    def _make(scenes_by_sensor=None, auxiliary=None, fail_on=None, dn=20000):
        datasets = {}
        for sensor, dates in (scenes_by_sensor or {}).items():
            datasets[landsat_dataset_id(sensor)] = [make_raw_scene(sensor, d, dn=dn) for d in dates]
        return InMemoryImageryService(datasets, auxiliary=auxiliary, grid_shape=GRID, fail_on=fail_on)

    return _make
