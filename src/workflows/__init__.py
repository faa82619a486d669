"""Multi-step VM and image workflows."""

from workflows.image import ImageWorkflows, fetch_image
from workflows.vm import (
    AlterPlan,
    LaunchPlan,
    LaunchRequest,
    VirtualMachineWorkflows,
    parse_scaling_spec,
)

__all__ = [
    'AlterPlan',
    'ImageWorkflows',
    'LaunchPlan',
    'LaunchRequest',
    'VirtualMachineWorkflows',
    'fetch_image',
    'parse_scaling_spec',
]
