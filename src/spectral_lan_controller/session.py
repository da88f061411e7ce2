"""Per-room spectral editing session: sliders, master mode, freezing and imports."""

from __future__ import annotations

import posixpath
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple

from .errors import NotFoundError, ParseError, ValidationError
from .importer import ProfileImporter
from .link import DeviceLink
from .logging import get_logger
from .models import MasterConfig, Room, RoomSpectralConfig, SpectralProfile, now_iso
from .spectral import (
    active_sources,
    clamp,
    compute_graph,
    initial_slider_values,
    scale_by_master,
    slider_value,
)
from .state import SpectralState, StateContainer, with_entry
from .transport import TransportResult

if TYPE_CHECKING:
    from .rooms import RoomOrchestrator


class SpectralSession:
    """Owns the authoritative :class:`SpectralState` for one room.

    Slider edits update the graph immediately, persist through the
    orchestrator and reach fixtures through the debounced path. Master moves,
    resets and presets push full snapshots as batches.
    """

    def __init__(
        self,
        room_id: str,
        rooms: "RoomOrchestrator",
        link: DeviceLink,
        importer: ProfileImporter,
    ) -> None:
        self.room_id = room_id
        self.rooms = rooms
        self.link = link
        self.importer = importer
        self.logger = get_logger("spectral.session")
        self.state: StateContainer[SpectralState] = StateContainer(
            SpectralState(room_id=room_id), name=f"spectral:{room_id}"
        )
        self._profile: Optional[SpectralProfile] = None

    @property
    def source_order(self) -> Tuple[str, ...]:
        return tuple(source.name for source in self.state.value.active_sources)

    async def open(self) -> None:
        """Connect the room's fixtures and load, or download, its spectral data."""

        self.state.update(lambda s: replace(s, is_loading=True, error=None))
        room = await self.rooms.get_room(self.room_id)
        members = [device for device in await self.rooms.room_devices(self.room_id) if device.address]
        pending = [device for device in members if device.id not in self.link.state.value.connected]
        if pending:
            await self.link.connect_all(pending)
        if room.spectral is not None:
            self._publish_config(room.spectral)
            return
        await self._download_profile(room)

    async def _download_profile(self, room: Room) -> None:
        connected = self.link.connected_devices(self.room_id)
        if not connected:
            self.state.update(lambda s: replace(s, is_loading=False, has_spectral_data=False))
            self.logger.info("No fixture available to supply a profile", extra={"room_id": self.room_id})
            return
        source = connected[0]
        paths = [path for path in self.link.config.profile_paths if self.importer.accepts(path)]
        failures = []
        for path in paths:
            result = await self.link.fetch_profile_file(source, path)
            if not result.ok or not result.value:
                failures.append(f"{path}: {result.error}")
                continue
            try:
                await self.import_profile(
                    result.value,
                    file_name=posixpath.basename(path),
                    model_hint=source.model or room.allowed_model,
                )
            except (ParseError, ValidationError) as exc:
                self.logger.warning(
                    "Downloaded profile rejected",
                    extra={"room_id": self.room_id, "device_id": source.id, "path": path, "error": str(exc)},
                )
            return
        detail = "; ".join(failures) if failures else "no configured profile file matches the importer"
        message = f"No importable profile on {source.name}: {detail}"
        self.state.update(lambda s: replace(s, is_loading=False, error=message))
        self.logger.info(message, extra={"room_id": self.room_id, "device_id": source.id})

    async def import_profile(
        self, data: bytes, file_name: Optional[str] = None, model_hint: Optional[str] = None
    ) -> SpectralState:
        """Parse and attach a profile; the room keeps its prior data if parsing fails."""

        self.state.update(lambda s: replace(s, is_loading=True, error=None))
        try:
            if model_hint is None:
                model_hint = (await self.rooms.get_room(self.room_id)).allowed_model
            profile = self.importer.parse(data, model_hint=model_hint)
            room = await self.rooms.replace_profile(self.room_id, profile, file_name)
        except (ParseError, ValidationError) as exc:
            self.state.update(lambda s: replace(s, is_loading=False, error=str(exc)))
            self.logger.warning(
                "Profile import failed", extra={"room_id": self.room_id, "error": str(exc)}
            )
            raise
        self.link.cancel_pending(self.room_id)
        self._publish_config(room.spectral)
        return self.state.value

    def refresh(self, room: Room) -> None:
        """Adopt the stored configuration after an external write such as a preset change."""

        if room.spectral is None:
            self._profile = None
            self.state.set(SpectralState(room_id=self.room_id))
            return
        self._publish_config(room.spectral)

    def _publish_config(self, config: Optional[RoomSpectralConfig]) -> None:
        if config is None:
            return
        profile = config.profile
        self._profile = profile
        sources = tuple(active_sources(profile))
        values = {
            source.name: slider_value(config.slider_values, profile, source.name) for source in sources
        }
        graph = tuple(compute_graph(profile, values))
        self.state.update(
            lambda s: replace(
                s,
                active_sources=sources,
                slider_values=values,
                graph_data=graph,
                presets=tuple(config.presets),
                master=config.master,
                file_name=config.file_name,
                has_spectral_data=True,
                is_loading=False,
                error=None,
            )
        )

    def _require_profile(self) -> SpectralProfile:
        if self._profile is None or not self.state.value.has_spectral_data:
            raise ValidationError("Room has no spectral data")
        return self._profile

    def _set_values(self, values: Mapping[str, float], master: Optional[MasterConfig] = None) -> None:
        profile = self._require_profile()
        graph = tuple(compute_graph(profile, values))
        self.state.update(
            lambda s: replace(
                s,
                slider_values=dict(values),
                graph_data=graph,
                master=master if master is not None else s.master,
            )
        )

    async def _persist(self) -> None:
        snapshot = self.state.value
        await self.rooms.update_spectral(
            self.room_id,
            lambda config: replace(
                config,
                slider_values=dict(snapshot.slider_values),
                master=snapshot.master,
                last_computed=now_iso(),
            ),
        )

    async def _push(self, values: Mapping[str, float]) -> Dict[str, TransportResult]:
        if not self.state.value.communication_enabled:
            return {}
        self.link.cancel_pending(self.room_id)
        return await self.link.push_slider_values(self.room_id, values, self.source_order)

    async def update_slider(self, source_name: str, value: float) -> bool:
        """Apply one slider edit; returns False when a frozen source ignores it."""

        self._require_profile()
        snapshot = self.state.value
        if source_name not in self.source_order:
            raise NotFoundError(f"Source {source_name} not found")
        if snapshot.master.enabled and source_name in snapshot.master.frozen:
            self.logger.debug(
                "Ignoring edit to frozen source",
                extra={"room_id": self.room_id, "source": source_name},
            )
            return False
        value = clamp(value)
        self._set_values(with_entry(snapshot.slider_values, source_name, value))
        await self._persist()
        if self.state.value.communication_enabled:
            self.link.send_slider_change(self.room_id, source_name, value, self.source_order)
        return True

    async def toggle_master_mode(self) -> MasterConfig:
        self._require_profile()
        snapshot = self.state.value
        if snapshot.master.enabled:
            master = MasterConfig()
        else:
            master = MasterConfig(enabled=True, value=1.0, base_values=dict(snapshot.slider_values))
        self.state.update(lambda s: replace(s, master=master))
        await self._persist()
        self.logger.info(
            "Master mode toggled", extra={"room_id": self.room_id, "enabled": master.enabled}
        )
        return master

    async def toggle_freeze(self, source_name: str) -> bool:
        """Pin or release a source; returns whether it is now frozen."""

        self._require_profile()
        master = self.state.value.master
        if not master.enabled:
            raise ValidationError("Sources can only be frozen in master mode")
        if source_name not in self.source_order:
            raise NotFoundError(f"Source {source_name} not found")
        if source_name in master.frozen:
            frozen = master.frozen - {source_name}
        else:
            frozen = master.frozen | {source_name}
        self.state.update(lambda s: replace(s, master=replace(master, frozen=frozenset(frozen))))
        await self._persist()
        return source_name in frozen

    async def update_master_value(self, value: float) -> Dict[str, TransportResult]:
        self._require_profile()
        snapshot = self.state.value
        if not snapshot.master.enabled:
            raise ValidationError("Master mode is not enabled")
        master = replace(snapshot.master, value=clamp(value))
        values = scale_by_master(
            master.base_values, master.value, master.frozen, current=snapshot.slider_values
        )
        self._set_values(values, master=master)
        await self._persist()
        return await self._push(values)

    async def reset_to_initial(self) -> Dict[str, TransportResult]:
        profile = self._require_profile()
        values = initial_slider_values(profile)
        self._set_values(values, master=MasterConfig())
        await self._persist()
        self.logger.info("Sliders reset to initial values", extra={"room_id": self.room_id})
        return await self._push(values)

    def set_communication(self, enabled: bool) -> None:
        self.state.update(lambda s: replace(s, communication_enabled=enabled))
        if not enabled:
            self.link.cancel_pending(self.room_id)

    def describe(self) -> Dict[str, Any]:
        snapshot = self.state.value
        return {
            "room_id": snapshot.room_id,
            "has_spectral_data": snapshot.has_spectral_data,
            "is_loading": snapshot.is_loading,
            "error": snapshot.error,
            "file_name": snapshot.file_name,
            "communication_enabled": snapshot.communication_enabled,
            "sources": [source.as_dict() for source in snapshot.active_sources],
            "slider_values": dict(snapshot.slider_values),
            "graph": [point.as_dict() for point in snapshot.graph_data],
            "presets": [preset.as_dict() for preset in snapshot.presets],
            "master": snapshot.master.as_dict(),
        }

    async def close(self) -> None:
        if self.state.value.communication_enabled:
            await self.link.flush_pending(self.room_id)
        else:
            self.link.cancel_pending(self.room_id)
