"""Virtual machine workflows.

Each workflow is a strictly sequential chain of API calls, tasks and state
polls. A failing step aborts the workflow and the error propagates as-is;
nothing already created on the remote side is cleaned up.

Per-call values (chosen storage, pool, whether a restart is owed) are
returned from each step in plan objects owned by the call.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from common import Clock, poll_until
from config import DriverConfig
from errors import BusinessFailure, ResourceNotFound, VmNotStopped, WorkflowError
from models import DiskChange, Product, VirtualMachine, first
from placement import PlacementSelector
from tasks import TaskTracker
from transport import Transport
from workflows.image import fetch_image

logger = logging.getLogger(__name__)

NIC_ADAPTER_TYPE = 1


@dataclass
class LaunchRequest:
    """What the caller wants launched."""
    image_id: str
    name: str
    site_id: str
    network_id: Optional[str]
    description: str = ''
    product_id: Optional[str] = None


@dataclass
class LaunchPlan:
    """Resolved image metadata, size and placement for one launch."""
    device_key: int
    os_family: str
    product: Product
    capacity_kb: int
    storage_id: str
    pool_id: str


@dataclass
class AlterPlan:
    """Outcome of the compute half of an alter call."""
    reconfigured: bool
    restart_owed: bool
    vm: VirtualMachine


_SCALING_SPEC = re.compile(r'^(?P<product>[^\[\]]+)(\[(?P<disks>[^\[\]]*)\])?$')


def parse_scaling_spec(spec: str) -> tuple[str, list[DiskChange]]:
    """Parse '<ramMB>:<cpu>[<disk>:<sizeGB>,...]' into a product id and disk changes.

    A disk id of 'new' adds a disk; any other id resizes that disk.

    >>> parse_scaling_spec('4096:2[new:20,disk-7:40]')
    ('4096:2', [DiskChange(size_gb=20, disk_id=None), DiskChange(size_gb=40, disk_id='disk-7')])
    """
    match = _SCALING_SPEC.match(spec.strip())
    if not match:
        raise WorkflowError(f"Invalid scaling spec '{spec}'")
    changes = []
    for item in filter(None, (match.group('disks') or '').split(',')):
        parts = item.strip().split(':')
        if len(parts) != 2:
            raise WorkflowError(
                "Volume string must take format <id>:<sizeInGB>. NB id is 'new' if adding new disk"
            )
        disk_id, size = parts
        try:
            size_gb = int(size)
        except ValueError as e:
            raise WorkflowError(f"Invalid disk size '{size}' in '{spec}'") from e
        changes.append(DiskChange(size_gb=size_gb, disk_id=None if disk_id == 'new' else disk_id))
    return match.group('product'), changes


class VirtualMachineWorkflows:
    """Launch, alter, terminate and power VMs."""

    def __init__(
        self,
        transport: Transport,
        tracker: TaskTracker,
        placement: PlacementSelector,
        config: DriverConfig,
        clock: Optional[Clock] = None,
    ):
        self.transport = transport
        self.tracker = tracker
        self.placement = placement
        self.config = config
        self.clock = clock or Clock()

    def get_vm(self, vm_id: str) -> Optional[VirtualMachine]:
        data = first(self.transport.get_json(f"/VirtualMachine/{vm_id}?$filter=IsRemoved eq false"))
        if not data:
            return None
        return VirtualMachine.from_dict(data)

    def _require_vm(self, vm_id: str) -> VirtualMachine:
        vm = self.get_vm(vm_id)
        if vm is None:
            raise ResourceNotFound(f"VirtualMachine {vm_id} not found")
        return vm

    def _submit(self, resource: str, payload=None, what: str = '') -> Optional[str]:
        """POST a mutating call and wait for its task. Returns the task result."""
        response = self.transport.post_json(resource, payload)
        result = self.tracker.wait_for_response(response)
        if result is None:
            logger.warning(f"No confirmation of {what or resource} task completion but no error either")
        return result

    # Launch

    def plan_launch(self, request: LaunchRequest) -> LaunchPlan:
        """Resolve image, size and placement for a launch."""
        image = fetch_image(self.transport, request.image_id)
        if image is None:
            raise ResourceNotFound(f"Image {request.image_id} not found")
        if image.device_key is None:
            raise WorkflowError(f"Image {request.image_id} has no DeviceKey")

        if request.product_id:
            product = Product.parse(request.product_id)
        else:
            product = Product(ram_mb=self.config.default_ram_mb, cpu=self.config.default_cpu)

        capacity_kb = self.config.root_disk_kb
        storage_id = self.placement.select_storage(capacity_kb, request.site_id)
        pool_id = self.placement.select_pool(request.site_id)
        return LaunchPlan(
            device_key=image.device_key,
            os_family=image.os_family,
            product=product,
            capacity_kb=capacity_kb,
            storage_id=storage_id,
            pool_id=pool_id,
        )

    def launch(self, request: LaunchRequest) -> VirtualMachine:
        """Create a VM from an image.

        Raises:
            WorkflowError: No network given, or no new VM id came back
            PlacementExhausted: No storage or pool in the site
            BusinessFailure: The create task failed
        """
        if not request.network_id:
            logger.error("Network is mandatory when launching vms")
            raise WorkflowError("Network is mandatory when launching vms")

        logger.info(f"[launch] Launching '{request.name}' from image {request.image_id} in site {request.site_id}")
        plan = self.plan_launch(request)
        logger.info(
            f"[launch] {plan.product.name}, {plan.os_family}, storage {plan.storage_id}, pool {plan.pool_id}"
        )

        payload = {
            'Description': request.description,
            'Disks': [{
                'StorageID': plan.storage_id,
                'CapacityKB': plan.capacity_kb,
                'DeviceKey': plan.device_key,
            }],
            'Nics': [{
                'NetworkID': request.network_id,
                'AdapterType': NIC_ADAPTER_TYPE,
            }],
            'NumCpu': plan.product.cpu,
            'RamAllocatedMB': plan.product.ram_mb,
            'ResourcePoolID': plan.pool_id,
            'SourceTemplateID': request.image_id,
            'TenantID': self.config.tenant_id,
            'CustomerDefinedName': request.name,
        }
        response = self.transport.post_json('/VirtualMachine/SetVM', payload)
        vm_id = self.tracker.wait_for_response(response)
        if vm_id:
            vm = self.get_vm(vm_id)
            if vm is not None:
                logger.info(f"[launch] VM {vm_id} created")
                return vm
        logger.error("Vm was launched without error but new id not returned")
        raise WorkflowError("Vm was launched without error but new id not returned")

    # Alter

    def wait_until_stopped(self, vm_id: str, timeout: Optional[float] = None,
                           cancel: Optional[threading.Event] = None) -> tuple[bool, Optional[VirtualMachine]]:
        """Poll the VM every poll_interval until it reports stopped.

        Returns:
            (stopped, last_observed_vm); stopped is False only if timeout expired
        """
        return poll_until(
            lambda: self.get_vm(vm_id),
            lambda vm: vm is not None and vm.stopped,
            interval=self.config.poll_interval,
            timeout=timeout,
            cancel=cancel,
            clock=self.clock,
            what=f"VM {vm_id} to stop",
        )

    def reconfigure(self, vm: VirtualMachine, product: Product) -> AlterPlan:
        """Apply a new compute size, stopping the VM first if needed."""
        if vm.product_id == product.product_id:
            return AlterPlan(reconfigured=False, restart_owed=False, vm=vm)

        restart_owed = False
        if not vm.stopped:
            restart_owed = True
            logger.info(f"[alter] Stopping VM {vm.vm_id} before reconfiguration")
            self.stop(vm.vm_id, force=True)
            _, vm = self.wait_until_stopped(vm.vm_id)

        logger.info(f"[alter] Reconfiguring VM {vm.vm_id} to {product.name}")
        self._submit('/VirtualMachine/ReconfigureVM', {
            'VirtualMachineID': vm.vm_id,
            'NumCpu': product.cpu,
            'RamAllocatedMB': product.ram_mb,
            'ResourcePoolID': vm.resource_pool_id,
        }, 'ReconfigureVM')
        return AlterPlan(reconfigured=True, restart_owed=restart_owed, vm=vm)

    def apply_disk_change(self, vm: VirtualMachine, change: DiskChange) -> None:
        """Add or resize one disk on storage chosen for the new capacity."""
        if not vm.site_id:
            raise WorkflowError(f"VM {vm.vm_id} has no site; cannot place disk")
        storage_id = self.placement.select_storage(change.capacity_kb, vm.site_id, vm.resource_pool_id)
        disk = {
            'StorageID': storage_id,
            'CapacityKB': change.capacity_kb,
            'VirtualMachineID': vm.vm_id,
        }
        if change.is_new:
            logger.info(f"[alter] Adding {change.size_gb}GB disk to VM {vm.vm_id}")
            self._submit('VirtualMachine/AddDisk', disk, 'AddDisk')
        else:
            logger.info(f"[alter] Resizing disk {change.disk_id} of VM {vm.vm_id} to {change.size_gb}GB")
            disk['VirtualMachineDiskID'] = change.disk_id
            self._submit('VirtualMachine/ReconfigureDisk', disk, 'ReconfigureDisk')

    def alter(self, vm_id: str, product_id: str, disk_changes: Iterable[DiskChange] = ()) -> VirtualMachine:
        """Resize a VM's compute and/or disks.

        The stop-before-reconfigure wait has no deadline.
        """
        vm = self._require_vm(vm_id)
        product = Product.parse(product_id)

        plan = self.reconfigure(vm, product)
        if plan.restart_owed:
            logger.info(f"[alter] Restarting VM {vm_id}")
            self.start(vm_id)

        for change in disk_changes:
            self.apply_disk_change(plan.vm, change)

        return self._require_vm(vm_id)

    # Terminate

    def terminate(self, vm_id: str) -> None:
        """Stop (bounded by stop_timeout) and remove a VM.

        Remove is only issued when the last observed state is stopped.

        Raises:
            VmNotStopped: VM still not stopped when the deadline expired
        """
        vm = self._require_vm(vm_id)
        if not vm.stopped:
            logger.info(f"[terminate] Stopping VM {vm_id}")
            self.stop(vm_id, force=True)
            stopped, last = self.wait_until_stopped(vm_id, timeout=self.config.stop_timeout)
            if not stopped:
                state = last.state if last is not None else 'unknown'
                logger.error(f"[terminate] Server {vm_id} not stopping so can't be deleted")
                raise VmNotStopped(vm_id, state)

        logger.info(f"[terminate] Removing VM {vm_id}")
        self._submit(f"/VirtualMachine/{vm_id}/Remove", None, 'TerminateVM')

    # Power and misc operations

    def start(self, vm_id: str) -> None:
        self._submit(f"/VirtualMachine/{vm_id}/PowerOn", None, 'StartVM')

    def stop(self, vm_id: str, force: bool = False) -> None:
        """Stop a VM. Graceful shutdown falls back to power-off on failure."""
        if force:
            self._submit(f"/VirtualMachine/{vm_id}/PowerOff", None, 'StopVM')
            return
        try:
            self._submit(f"/VirtualMachine/{vm_id}/ShutdownOS", None, 'ShutdownOS')
        except BusinessFailure as e:
            logger.error(f"Unable to shutdown os: {e.message} trying force stop")
            self.stop(vm_id, force=True)

    def reboot(self, vm_id: str) -> None:
        self._submit(f"/VirtualMachine/{vm_id}/RebootOS", None, 'RebootVM')

    def suspend(self, vm_id: str) -> None:
        self._submit(f"/VirtualMachine/{vm_id}/Suspend", None, 'SuspendVM')

    def resume(self, vm_id: str) -> None:
        self._submit(f"/VirtualMachine/{vm_id}/PowerOn", None, 'ResumeVM')

    def clone(self, vm_id: str, name: str, power_on: bool = False) -> VirtualMachine:
        """Clone a VM and return the new VM.

        Raises:
            WorkflowError: Clone task returned no new VM id
        """
        logger.info(f"[clone] Cloning VM {vm_id} as '{name}'")
        response = self.transport.post_json('/VirtualMachine/CloneVM', {
            'VirtualMachineID': vm_id,
            'Name': name,
            'PowerOn': power_on,
        })
        new_id = self.tracker.wait_for_response(response)
        vm = self.get_vm(new_id) if new_id else None
        if vm is None:
            logger.error("Vm was cloned without error but new id not returned")
            raise WorkflowError("Vm was cloned without error but new id not returned")
        return vm

    def remove_disk(self, vm_id: str, disk_id: str) -> None:
        logger.info(f"Removing disk {disk_id} from VM {vm_id}")
        self._submit('/VirtualMachine/RemoveDisk', {
            'VirtualMachineDiskID': disk_id,
            'VirtualMachineID': vm_id,
        }, 'RemoveVolume')
