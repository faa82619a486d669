"""Image (template) workflows."""

import logging
from typing import TYPE_CHECKING, Optional

from common import Clock, poll_until
from config import DriverConfig
from errors import ResourceNeverMaterialized, ResourceNotFound, WorkflowError
from models import MachineImage, first
from tasks import TaskTracker
from transport import Transport

if TYPE_CHECKING:
    from workflows.vm import VirtualMachineWorkflows

logger = logging.getLogger(__name__)


def fetch_image(transport: Transport, image_id: str) -> Optional[MachineImage]:
    """Fetch a template by id; None when it does not exist (yet)."""
    data = first(transport.get_json(f"VirtualMachine/{image_id}?$filter=IsRemoved eq false"))
    if not data:
        return None
    return MachineImage.from_dict(data)


class ImageWorkflows:
    """Capture VMs to images and manage templates."""

    def __init__(
        self,
        transport: Transport,
        tracker: TaskTracker,
        vms: 'VirtualMachineWorkflows',
        config: DriverConfig,
        clock: Optional[Clock] = None,
    ):
        self.transport = transport
        self.tracker = tracker
        self.vms = vms
        self.config = config
        self.clock = clock or Clock()

    def get_image(self, image_id: str) -> Optional[MachineImage]:
        return fetch_image(self.transport, image_id)

    def list_images(self) -> list[MachineImage]:
        """List the tenant's templates."""
        query = f"IsTemplate eq true and IsRemoved eq false and TenantID eq '{self.config.tenant_id}'"
        data = self.transport.get_json(f"VirtualMachine?$filter={query}") or []
        return [MachineImage.from_dict(item) for item in data]

    def capture(self, vm_id: str, name: str, description: str = '') -> MachineImage:
        """Capture a VM as a new image.

        Steps: clone the VM (powered off), disconnect the clone's network
        interface, mark the clone as a template, then wait (bounded by
        image_timeout) for the image to become visible.

        Raises:
            ResourceNotFound: Source VM does not exist
            WorkflowError: NIC still attached, or no template id returned
            ResourceNeverMaterialized: Image not visible before the deadline
        """
        source = self.vms.get_vm(vm_id)
        if source is None:
            raise ResourceNotFound(f"VirtualMachine {vm_id} not found")

        logger.info(f"[capture] Capturing VM {vm_id} as image '{name}'")
        clone = self.vms.clone(vm_id, name, power_on=False)

        if clone.nic_id:
            logger.info(f"[capture] Disconnecting NIC {clone.nic_id} from clone {clone.vm_id}")
            response = self.transport.post_json('/VirtualMachine/RemoveNic', {
                'VirtualMachineID': clone.vm_id,
                'VirtualMachineNicID': clone.nic_id,
            })
            self.tracker.wait_for_response(response)

            refreshed = self.vms.get_vm(clone.vm_id)
            if refreshed is None or refreshed.nic_id is not None:
                logger.error(f"[capture] NIC still attached to clone {clone.vm_id}")
                raise WorkflowError(f"Network interface still attached to clone {clone.vm_id}")

        response = self.transport.post_json('/VirtualMachine/MarkAsTemplate', clone.vm_id)
        template_id = self.tracker.wait_for_response(response)
        if not template_id:
            logger.error("Template created without error but no new id returned")
            raise WorkflowError("Template created without error but no new id returned")

        found, image = poll_until(
            lambda: self.get_image(template_id),
            lambda img: img is not None,
            interval=self.config.poll_interval,
            timeout=self.config.image_timeout,
            clock=self.clock,
            what=f"image {template_id}",
        )
        if not found:
            logger.error(f"Machine image job completed successfully, but no image {template_id} exists.")
            raise ResourceNeverMaterialized(template_id, self.config.image_timeout)

        logger.info(f"[capture] Image {template_id} available")
        if description:
            image.description = image.description or description
        return image

    def remove(self, image_id: str) -> None:
        """Remove a template."""
        logger.info(f"Removing image {image_id}")
        response = self.transport.post_json('VirtualMachine/RemoveTemplate', image_id)
        if self.tracker.wait_for_response(response) is None:
            logger.warning("No confirmation of RemoveTemplate task completion but no error either")
