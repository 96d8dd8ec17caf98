#!/usr/bin/env python3
"""
Catalog - Static registry of the workloads expected on the Proxmox node

Container categories follow the numbering convention used on the node:

    100-199  Core Infrastructure
    210-229  Essential Media Services
    230-239  Media Servers
    240-250  Enhancement Services
    260-269  Monitoring & Analytics
    270-279  Management & Utilities

Adding a workload only requires a new row in the tables below.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from errors import NotFoundError


class WorkloadKind(str, Enum):
    CONTAINER = "Container"
    VIRTUAL_MACHINE = "VirtualMachine"


@dataclass(frozen=True)
class CatalogEntry:
    id: int
    kind: WorkloadKind
    category: str
    name: str
    description: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "category": self.category,
            "name": self.name,
            "description": self.description,
        }


# (first id, last id, category) - inclusive ranges
_CONTAINER_RANGES: List[Tuple[int, int, str]] = [
    (100, 199, "Core Infrastructure"),
    (210, 229, "Essential Media Services"),
    (230, 239, "Media Servers"),
    (240, 250, "Enhancement Services"),
    (260, 269, "Monitoring & Analytics"),
    (270, 279, "Management & Utilities"),
]

VM_CATEGORY = "Virtual Machines"

_CONTAINER_TABLE: List[Tuple[int, str, str]] = [
    (100, "WireGuard", "VPN access and secure tunneling"),
    (101, "Gluetun", "VPN client container for other services"),
    (102, "Flaresolverr", "Cloudflare solver proxy"),
    (103, "Traefik", "Reverse proxy and load balancer"),
    (104, "Vaultwarden", "Password manager server"),
    (105, "Valkey", "Redis-compatible in-memory database"),
    (106, "PostgreSQL", "Primary database server"),
    (107, "Authentik", "Identity provider and SSO"),
    (210, "Prowlarr", "Indexer manager and proxy"),
    (211, "Jackett", "Torrent indexer proxy"),
    (212, "QBittorrent", "BitTorrent client"),
    (214, "Sonarr", "TV series management"),
    (215, "Radarr", "Movie management"),
    (216, "Proxarr", "Proxy management for *arr apps"),
    (217, "Readarr", "Book and audiobook management"),
    (219, "Whisparr", "Adult content management"),
    (220, "Sonarr Extended", "Extended TV series management"),
    (221, "Radarr Extended", "Extended movie management"),
    (223, "Autobrr", "Automated torrent management"),
    (224, "Deluge", "Alternative BitTorrent client"),
    (230, "Plex", "Media server and streaming platform"),
    (231, "Jellyfin", "Open-source media server"),
    (232, "Audiobookshelf", "Audiobook and podcast server"),
    (233, "Calibre-web", "E-book server and manager"),
    (234, "IPTV-Proxy", "IPTV streaming proxy"),
    (235, "TVHeadend", "TV streaming server"),
    (236, "Tdarr Server", "Media transcoding server"),
    (237, "Tdarr Node", "Media transcoding worker"),
    (240, "Bazarr", "Subtitle management"),
    (241, "Overseerr", "Media request management"),
    (242, "Jellyseerr", "Jellyfin request management"),
    (243, "Ombi", "Media request platform"),
    (244, "Tautulli", "Plex monitoring and statistics"),
    (245, "Kometa", "Plex metadata management"),
    (246, "Gaps", "Plex collection gap finder"),
    (247, "Janitorr", "Media cleanup automation"),
    (248, "Decluttarr", "Media library decluttering"),
    (249, "Watchlistarr", "Watchlist synchronization"),
    (250, "Traktarr", "Trakt.tv integration"),
    (260, "Prometheus", "Metrics collection and monitoring"),
    (261, "Grafana", "Metrics visualization and dashboards"),
    (262, "Checkrr", "Service health checking"),
    (270, "FileBot", "File renaming and organization"),
    (271, "FlexGet", "Automated content downloading"),
    (272, "Buildarr", "Configuration management for *arr apps"),
    (274, "Organizr", "Service organization dashboard"),
    (275, "Homarr", "Modern dashboard for services"),
    (276, "Homepage", "Customizable homepage dashboard"),
    (277, "Recyclarr", "Configuration recycling for *arr apps"),
    (278, "CrowdSec", "Collaborative security engine"),
    (279, "Tailscale", "Secure networking mesh"),
]

_VM_TABLE: List[Tuple[int, str, str]] = [
    (500, "Home Assistant", "Home automation platform"),
    (611, "Alexa", "Voice assistant system"),
    (900, "AI System", "Artificial intelligence services"),
]


def category_for(workload_id: int, kind: WorkloadKind) -> str:
    """Return the category implied by the id range convention."""
    if kind is WorkloadKind.VIRTUAL_MACHINE:
        return VM_CATEGORY
    for first, last, category in _CONTAINER_RANGES:
        if first <= workload_id <= last:
            return category
    return "Other"


def container(workload_id: int, name: str, description: str = "Service container") -> CatalogEntry:
    return CatalogEntry(
        id=workload_id,
        kind=WorkloadKind.CONTAINER,
        category=category_for(workload_id, WorkloadKind.CONTAINER),
        name=name,
        description=description,
    )


def vm(workload_id: int, name: str, description: str = "Virtual machine") -> CatalogEntry:
    return CatalogEntry(
        id=workload_id,
        kind=WorkloadKind.VIRTUAL_MACHINE,
        category=VM_CATEGORY,
        name=name,
        description=description,
    )


class Catalog:
    """Read-only id -> CatalogEntry registry, iterated in ascending id order."""

    def __init__(self, entries: Iterable[CatalogEntry]):
        by_id: Dict[int, CatalogEntry] = {}
        for entry in entries:
            if entry.id in by_id:
                raise ValueError(f"Duplicate workload id in catalog: {entry.id}")
            by_id[entry.id] = entry
        self._by_id = by_id
        self._ordered = tuple(sorted(by_id.values(), key=lambda e: e.id))

    @classmethod
    def default(cls) -> "Catalog":
        entries = [container(i, n, d) for i, n, d in _CONTAINER_TABLE]
        entries += [vm(i, n, d) for i, n, d in _VM_TABLE]
        return cls(entries)

    def lookup(self, workload_id: int, kind: Optional[WorkloadKind] = None) -> CatalogEntry:
        entry = self._by_id.get(workload_id)
        if entry is None or (kind is not None and entry.kind is not kind):
            label = "workload" if kind is None else kind.value
            raise NotFoundError(f"Unknown {label} id: {workload_id}")
        return entry

    def all(self) -> Tuple[CatalogEntry, ...]:
        return self._ordered

    def containers(self) -> List[CatalogEntry]:
        return [e for e in self._ordered if e.kind is WorkloadKind.CONTAINER]

    def vms(self) -> List[CatalogEntry]:
        return [e for e in self._ordered if e.kind is WorkloadKind.VIRTUAL_MACHINE]

    def position(self, workload_id: int) -> int:
        """Index of the id in catalog order (used to sort derived records)."""
        for index, entry in enumerate(self._ordered):
            if entry.id == workload_id:
                return index
        raise NotFoundError(f"Unknown workload id: {workload_id}")

    def __contains__(self, workload_id: object) -> bool:
        return workload_id in self._by_id

    def __len__(self) -> int:
        return len(self._ordered)

    def __iter__(self):
        return iter(self._ordered)
