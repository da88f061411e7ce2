"""Spectral profile importers.

An importer turns a profile document into a :class:`SpectralProfile` or raises
:class:`ParseError` naming the section at fault. Spreadsheet profiles are
handled by an external importer implementing the same interface with
``extensions = (".xlsx",)``; automatic downloads only try files whose
extension the configured importer accepts.
"""

from __future__ import annotations

import json
import math
import posixpath
from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Optional, Tuple

from .errors import ParseError
from .models import LightSource, SpectralPoint, SpectralProfile


class ProfileImporter(ABC):
    """Parses a profile document into an immutable spectral profile."""

    #: File extensions this importer reads; empty means any file.
    extensions: Tuple[str, ...] = ()

    def accepts(self, file_name: str) -> bool:
        if not self.extensions:
            return True
        return posixpath.splitext(file_name)[1].lower() in self.extensions

    @abstractmethod
    def parse(self, data: bytes, model_hint: Optional[str] = None) -> SpectralProfile:
        """Parse ``data``; ``model_hint`` binds the profile when the document does not."""


def _number(value: Any, section: str) -> float:
    if isinstance(value, bool):
        raise ParseError(section, f"expected a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(section, f"expected a number, got {value!r}") from exc
    if math.isnan(number) or math.isinf(number):
        raise ParseError(section, "numbers must be finite")
    return number


class JsonProfileImporter(ProfileImporter):
    """Reads profiles shaped as ``{"sources": [...], "spectrum": [...]}``."""

    extensions = (".json",)

    def parse(self, data: bytes, model_hint: Optional[str] = None) -> SpectralProfile:
        try:
            document = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ParseError("document", "profile is not valid UTF-8 JSON") from exc
        if not isinstance(document, Mapping):
            raise ParseError("document", "top level must be an object")

        sources = self._sources(document.get("sources"))
        spectrum = self._spectrum(document.get("spectrum"), {source.name for source in sources})
        model = document.get("device_model") or model_hint
        return SpectralProfile(
            sources=tuple(sources),
            spectrum=tuple(spectrum),
            device_model=str(model) if model else None,
        )

    def _sources(self, raw: Any) -> List[LightSource]:
        if not isinstance(raw, list) or not raw:
            raise ParseError("sources", "expected a non-empty list of light sources")
        sources: List[LightSource] = []
        seen = set()
        for position, item in enumerate(raw):
            section = f"sources[{position}]"
            if not isinstance(item, Mapping) or not str(item.get("name") or "").strip():
                raise ParseError(section, "each source needs a name")
            name = str(item["name"]).strip()
            if name in seen:
                raise ParseError(section, f"duplicate source name {name!r}")
            seen.add(name)
            sources.append(
                LightSource(
                    name=name,
                    color=str(item.get("color") or "#FFFFFF"),
                    intensity_factor=_number(item.get("intensity_factor", 1.0), f"{section}.intensity_factor"),
                    initial_power=_number(item.get("initial_power", 0.0), f"{section}.initial_power"),
                )
            )
        return sources

    def _spectrum(self, raw: Any, source_names: set) -> List[SpectralPoint]:
        if not isinstance(raw, list) or not raw:
            raise ParseError("spectrum", "expected a non-empty list of sample points")
        points: List[SpectralPoint] = []
        for position, item in enumerate(raw):
            section = f"spectrum[{position}]"
            if not isinstance(item, Mapping) or "wavelength" not in item:
                raise ParseError(section, "each sample point needs a wavelength")
            intensities = item.get("intensities")
            if not isinstance(intensities, Mapping):
                raise ParseError(f"{section}.intensities", "expected an object keyed by source name")
            values = {}
            for name, value in intensities.items():
                if name not in source_names:
                    raise ParseError(f"{section}.intensities", f"unknown source {name!r}")
                values[str(name)] = _number(value, f"{section}.intensities.{name}")
            points.append(
                SpectralPoint(
                    wavelength=_number(item["wavelength"], f"{section}.wavelength"),
                    intensities=values,
                )
            )
        return sorted(points, key=lambda point: point.wavelength)
