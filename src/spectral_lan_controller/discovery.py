"""Subnet scanning for fixtures that are on the LAN but not yet paired."""

from __future__ import annotations

import asyncio
import ipaddress
import time
from typing import Iterable, List, Optional

from .config import Config
from .logging import get_logger
from .metrics import observe_discovery_scan, record_discovery_response
from .models import Device
from .transport import DeviceTransport


def discovered_device_id(address: str) -> str:
    """Stable id for a fixture found at ``address``; fixtures report no serial of their own."""

    return "fixture-" + address.replace(".", "-").replace(":", "-")


class DiscoveryService:
    """Probes every host of the configured subnets with bounded concurrency.

    A host counts as a fixture when it answers the reachability check and its
    status reports a model containing one of the configured keywords.
    """

    def __init__(self, config: Config, transport: DeviceTransport) -> None:
        self.config = config
        self.transport = transport
        self.logger = get_logger("spectral.discovery")

    def candidate_addresses(self, exclude: Iterable[str] = ()) -> List[str]:
        skipped = set(exclude)
        addresses: List[str] = []
        seen = set()
        for subnet in self.config.discovery_subnets:
            network = ipaddress.ip_network(subnet, strict=False)
            hosts = network.hosts() if network.num_addresses > 1 else iter([network.network_address])
            for host in hosts:
                address = str(host)
                if address in skipped or address in seen:
                    continue
                if len(addresses) >= self.config.discovery_max_hosts:
                    self.logger.warning(
                        "Discovery host limit reached; remaining addresses skipped",
                        extra={"subnet": subnet, "max_hosts": self.config.discovery_max_hosts},
                    )
                    return addresses
                seen.add(address)
                addresses.append(address)
        return addresses

    def _model_matches(self, model: Optional[str]) -> bool:
        keywords = [keyword.lower() for keyword in self.config.discovery_model_keywords]
        if not keywords:
            return True
        return bool(model) and any(keyword in model.lower() for keyword in keywords)

    async def probe(self, address: str) -> Optional[Device]:
        candidate = Device(id=discovered_device_id(address), name=f"Fixture {address}", address=address)
        try:
            reachable = await asyncio.wait_for(
                self.transport.test_connection(candidate), timeout=self.config.discovery_timeout
            )
            if not reachable.ok:
                record_discovery_response("silent")
                return None
            status = await asyncio.wait_for(
                self.transport.get_status(candidate), timeout=self.config.discovery_timeout
            )
        except asyncio.TimeoutError:
            record_discovery_response("silent")
            return None
        if not status.ok or status.value is None or not self._model_matches(status.value.model):
            record_discovery_response("foreign")
            self.logger.debug(
                "Ignoring non-fixture host",
                extra={"address": address, "error": status.error},
            )
            return None
        record_discovery_response("fixture")
        self.logger.info(
            "Discovered fixture",
            extra={"address": address, "model": status.value.model},
        )
        return status.value

    async def scan(self, exclude: Iterable[str] = ()) -> List[Device]:
        """Return the fixtures answering on the configured subnets, in address order."""

        started = time.perf_counter()
        result = "ok"
        try:
            if self.config.dry_run:
                self.logger.info("Skipping subnet scan in dry-run mode")
                result = "dry_run"
                return []
            addresses = self.candidate_addresses(exclude)
            if not addresses:
                result = "empty"
                return []
            limiter = asyncio.Semaphore(self.config.discovery_concurrency)

            async def _bounded(address: str) -> Optional[Device]:
                async with limiter:
                    return await self.probe(address)

            self.logger.info(
                "Scanning for fixtures",
                extra={"hosts": len(addresses), "concurrency": self.config.discovery_concurrency},
            )
            found = await asyncio.gather(*(_bounded(address) for address in addresses))
            devices = [device for device in found if device is not None]
            self.logger.info("Subnet scan finished", extra={"hosts": len(addresses), "found": len(devices)})
            return devices
        except Exception:
            result = "error"
            raise
        finally:
            observe_discovery_scan(result, time.perf_counter() - started)
