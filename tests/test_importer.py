import json

import pytest

from spectral_lan_controller.errors import ParseError
from spectral_lan_controller.importer import JsonProfileImporter


def _document(**overrides) -> bytes:
    document = {
        "sources": [
            {"name": "Red", "color": "#FF0000", "intensity_factor": 1.0, "initial_power": 100},
            {"name": "Blue", "color": "#0000FF", "intensity_factor": 0.5, "initial_power": 0},
        ],
        "spectrum": [
            {"wavelength": 660, "intensities": {"Red": 0.9, "Blue": 0.1}},
            {"wavelength": 450, "intensities": {"Blue": 1.0}},
        ],
    }
    document.update(overrides)
    return json.dumps(document).encode("utf-8")


def test_parses_sources_and_sorts_spectrum() -> None:
    profile = JsonProfileImporter().parse(_document(device_model="X"))

    assert profile.source_names == ("Red", "Blue")
    assert [point.wavelength for point in profile.spectrum] == [450, 660]
    assert profile.source("Blue").intensity_factor == 0.5
    assert profile.device_model == "X"


def test_model_hint_binds_unbound_documents() -> None:
    profile = JsonProfileImporter().parse(_document(), model_hint="Y")

    assert profile.device_model == "Y"


@pytest.mark.parametrize(
    "data,section",
    [
        (b"\xff\xfe", "document"),
        (b"[1, 2]", "document"),
        (_document(sources=[]), "sources"),
        (_document(sources=[{"color": "#FFF"}]), "sources[0]"),
        (_document(sources=[{"name": "Red"}, {"name": "Red"}]), "sources[1]"),
        (_document(spectrum="nope"), "spectrum"),
        (_document(spectrum=[{"intensities": {}}]), "spectrum[0]"),
        (_document(spectrum=[{"wavelength": 400, "intensities": {"Green": 1}}]), "spectrum[0].intensities"),
        (_document(spectrum=[{"wavelength": "blue", "intensities": {}}]), "spectrum[0].wavelength"),
    ],
)
def test_malformed_sections_are_named(data, section) -> None:
    with pytest.raises(ParseError) as excinfo:
        JsonProfileImporter().parse(data)

    assert excinfo.value.section == section


def test_json_importer_accepts_json_files_only() -> None:
    importer = JsonProfileImporter()

    assert importer.accepts("/data/profile.json")
    assert importer.accepts("GROW.JSON")
    assert not importer.accepts("/data/data.xlsx")
    assert not importer.accepts("profile")
