"""Thin mappers from API payloads to the values the workflows need.

Only the fields the engine consumes are mapped; everything else stays in
``raw`` for callers that want it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from errors import WorkflowError

logger = logging.getLogger(__name__)

STOPPED = 'stopped'
RUNNING = 'running'
SUSPENDED = 'suspended'
UNKNOWN = 'unknown'

_POWER_STATES = {
    'poweredoff': STOPPED,
    'poweredon': RUNNING,
    'suspended': SUSPENDED,
}


def _site_id(data: dict) -> Optional[str]:
    hypervisor = data.get('Hypervisor') or {}
    site = hypervisor.get('Site') or {}
    return site.get('SiteID')


@dataclass
class VirtualMachine:
    """VM as reported by GET /VirtualMachine/<id>."""
    vm_id: str
    name: str = ''
    state: str = UNKNOWN
    product_id: str = ''
    cpu: int = 0
    ram_mb: int = 0
    resource_pool_id: Optional[str] = None
    site_id: Optional[str] = None
    nic_id: Optional[str] = None
    network_id: Optional[str] = None
    is_template: bool = False
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def stopped(self) -> bool:
        return self.state == STOPPED

    @classmethod
    def from_dict(cls, data: dict) -> 'VirtualMachine':
        power = str(data.get('PowerState') or '').lower()
        state = _POWER_STATES.get(power, UNKNOWN)
        if power and state == UNKNOWN:
            logger.warning(f"Unknown vm state {data.get('PowerState')}")

        nic_id = network_id = None
        nics = data.get('Nics') or []
        if nics:
            nic_id = nics[0].get('VirtualMachineNicID')
            network_id = nics[0].get('NetworkID')

        cpu = int(data.get('NumCpu') or 0)
        ram = int(data.get('RamAllocatedMB') or 0)
        return cls(
            vm_id=str(data['VirtualMachineID']),
            name=data.get('CustomerDefinedName') or '',
            state=state,
            product_id=f"{ram}:{cpu}",
            cpu=cpu,
            ram_mb=ram,
            resource_pool_id=data.get('ResourcePoolID'),
            site_id=_site_id(data),
            nic_id=nic_id,
            network_id=network_id,
            is_template=bool(data.get('IsTemplate', False)),
            raw=data,
        )


@dataclass
class MachineImage:
    """Template VM usable as a launch image."""
    image_id: str
    name: str = ''
    description: str = ''
    os: str = ''
    device_key: Optional[int] = None
    site_id: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def os_family(self) -> str:
        """'Windows' or 'Linux', as the create call expects."""
        return 'Windows' if 'windows' in self.os.lower() else 'Linux'

    @classmethod
    def from_dict(cls, data: dict) -> 'MachineImage':
        device_key = None
        disks = data.get('Disks') or []
        if data.get('DeviceKey') is not None:
            device_key = int(data['DeviceKey'])
        elif disks and disks[0].get('DeviceKey') is not None:
            device_key = int(disks[0]['DeviceKey'])
        return cls(
            image_id=str(data['VirtualMachineID']),
            name=data.get('CustomerDefinedName') or '',
            description=data.get('Description') or '',
            os=data.get('OS') or '',
            device_key=device_key,
            site_id=_site_id(data),
            raw=data,
        )


@dataclass
class StorageCandidate:
    """Storage bin that can host a new disk."""
    storage_id: str
    free_kb: int
    capacity_kb: int
    site_id: Optional[str] = None
    name: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'StorageCandidate':
        return cls(
            storage_id=str(data['StorageID']),
            free_kb=int(data.get('FreeSpaceKB') or 0),
            capacity_kb=int(data.get('CapacityKB') or 0),
            site_id=_site_id(data),
            name=data.get('Name') or '',
        )


@dataclass
class ResourcePool:
    """Compute resource pool."""
    pool_id: str
    in_use: bool = False
    site_id: Optional[str] = None
    hypervisor_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourcePool':
        hypervisor = data.get('Hypervisor') or {}
        return cls(
            pool_id=str(data['ResourcePoolID']),
            in_use=bool(data.get('VirtualMachineIDs')),
            site_id=_site_id(data),
            hypervisor_id=hypervisor.get('HypervisorID'),
        )


@dataclass
class BlobEntry:
    """Object or directory in a storage bin, or a storage bin itself."""
    name: str
    path: str
    is_directory: bool = False
    size: Optional[int] = None
    last_modified: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict, bucket: str = '') -> 'BlobEntry':
        """Map a StorageSearchFile entry; without a bucket, a storage bin listing entry."""
        name = data.get('Name') or ''
        if not bucket:
            return cls(name=name, path=f"/{name}", is_directory=True)
        size = data.get('Size')
        return cls(
            name=name,
            path=f"/{bucket.strip('/')}/{name}",
            is_directory=bool(data.get('IsDirectory', False)),
            size=int(size) if size is not None else None,
            last_modified=data.get('LastModified'),
        )


@dataclass(frozen=True)
class Product:
    """Compute size, identified as '<ramMB>:<cpuCount>'."""
    ram_mb: int
    cpu: int

    @property
    def product_id(self) -> str:
        return f"{self.ram_mb}:{self.cpu}"

    @property
    def name(self) -> str:
        return f"{self.ram_mb}MB - {self.cpu} core{'s' if self.cpu > 1 else ''}"

    @classmethod
    def parse(cls, product_id: str) -> 'Product':
        parts = product_id.split(':')
        if len(parts) < 2:
            raise WorkflowError(f"Invalid product id '{product_id}', expected <ramMB>:<cpu>")
        try:
            return cls(ram_mb=int(parts[0]), cpu=int(parts[1]))
        except ValueError as e:
            raise WorkflowError(f"Invalid product id '{product_id}': {e}") from e


@dataclass(frozen=True)
class DiskChange:
    """Add a disk (disk_id None) or resize an existing one."""
    size_gb: int
    disk_id: Optional[str] = None

    @property
    def capacity_kb(self) -> int:
        return self.size_gb * 1024 * 1024

    @property
    def is_new(self) -> bool:
        return self.disk_id is None


def first(items: Any) -> Optional[dict]:
    """Unwrap a single-item list payload."""
    if isinstance(items, list):
        return items[0] if items else None
    return items
