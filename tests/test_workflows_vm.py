"""Tests for workflows/vm.py - VM launch, alter, terminate and power workflows."""

import pytest

from conftest import task_done, task_failed, task_ref
from errors import PlacementExhausted, ResourceNotFound, VmNotStopped, WorkflowError
from models import DiskChange, Product
from placement import PlacementSelector
from tasks import TaskTracker
from workflows.vm import LaunchRequest, VirtualMachineWorkflows, parse_scaling_spec

SITE_STORAGE = "/Storage?$filter=IsRemoved eq false and Hypervisor/Site/SiteID eq 'site-1'"
SITE_POOLS = "/ResourcePool?$filter=IsRemoved eq false and Hypervisor/Site/SiteID eq 'site-1'"
IMAGE_PATH = 'VirtualMachine/img-1?$filter=IsRemoved eq false'


def vm_path(vm_id):
    return f"/VirtualMachine/{vm_id}?$filter=IsRemoved eq false"


def vm_data(vm_id='vm-1', power='PoweredOn', ram=2048, cpu=1):
    return [{
        'VirtualMachineID': vm_id,
        'CustomerDefinedName': 'web',
        'PowerState': power,
        'NumCpu': cpu,
        'RamAllocatedMB': ram,
        'ResourcePoolID': 'pool-1',
        'Hypervisor': {'Site': {'SiteID': 'site-1'}},
        'Nics': [{'VirtualMachineNicID': 'nic-1', 'NetworkID': 'net-1'}],
    }]


RUNNING = vm_data()
STOPPED = vm_data(power='PoweredOff')


def on_task(transport, resource, task_id, result=None):
    """Register a mutating POST that completes task_id with result."""
    transport.on('POST', resource, task_ref(task_id))
    transport.on('GET', f"/TaskInfo/{task_id}", task_done(result))


@pytest.fixture
def vms(fake_transport, driver_config, fake_clock):
    tracker = TaskTracker(fake_transport, driver_config, fake_clock)
    placement = PlacementSelector(fake_transport)
    return VirtualMachineWorkflows(fake_transport, tracker, placement, driver_config, fake_clock)


@pytest.fixture
def launch_api(fake_transport):
    fake_transport.on('GET', IMAGE_PATH, [{
        'VirtualMachineID': 'img-1',
        'OS': 'Microsoft Windows Server 2019',
        'Disks': [{'DeviceKey': 2000}],
    }])
    fake_transport.on('GET', SITE_STORAGE, [
        {'StorageID': 'A', 'FreeSpaceKB': 60_000_000, 'CapacityKB': 100_000_000},
        {'StorageID': 'B', 'FreeSpaceKB': 80_000_000, 'CapacityKB': 90_000_000},
    ])
    fake_transport.on('GET', SITE_POOLS, [{'ResourcePoolID': 'pool-1'}])
    on_task(fake_transport, '/VirtualMachine/SetVM', 't-set', 'vm-new')
    fake_transport.on('GET', vm_path('vm-new'), vm_data('vm-new'))
    return fake_transport


def _request(**overrides):
    values = dict(image_id='img-1', name='web', site_id='site-1', network_id='net-1', description='frontend')
    values.update(overrides)
    return LaunchRequest(**values)


class TestLaunch:
    """Test VirtualMachineWorkflows.launch()."""

    def test_create_payload(self, vms, launch_api):
        vm = vms.launch(_request())
        assert vm.vm_id == 'vm-new'
        assert launch_api.payload('POST', '/VirtualMachine/SetVM') == {
            'Description': 'frontend',
            'Disks': [{'StorageID': 'A', 'CapacityKB': 20971520, 'DeviceKey': 2000}],
            'Nics': [{'NetworkID': 'net-1', 'AdapterType': 1}],
            'NumCpu': 1,
            'RamAllocatedMB': 2048,
            'ResourcePoolID': 'pool-1',
            'SourceTemplateID': 'img-1',
            'TenantID': 'tenant-1',
            'CustomerDefinedName': 'web',
        }

    def test_explicit_product(self, vms, launch_api):
        vms.launch(_request(product_id='8192:4'))
        payload = launch_api.payload('POST', '/VirtualMachine/SetVM')
        assert (payload['RamAllocatedMB'], payload['NumCpu']) == (8192, 4)

    def test_plan(self, vms, launch_api):
        plan = vms.plan_launch(_request())
        assert plan.os_family == 'Windows'
        assert plan.device_key == 2000
        assert plan.product == Product(ram_mb=2048, cpu=1)
        assert (plan.storage_id, plan.pool_id) == ('A', 'pool-1')

    def test_network_mandatory(self, vms, fake_transport):
        with pytest.raises(WorkflowError, match='Network is mandatory'):
            vms.launch(_request(network_id=None))
        assert fake_transport.calls == []

    def test_no_new_id(self, vms, launch_api):
        launch_api.on('GET', '/TaskInfo/t-set', task_done(None))
        with pytest.raises(WorkflowError, match='new id not returned'):
            vms.launch(_request())

    def test_missing_image(self, vms, fake_transport):
        fake_transport.on('GET', IMAGE_PATH, None)
        with pytest.raises(ResourceNotFound):
            vms.launch(_request())

    def test_no_storage(self, vms, launch_api):
        launch_api.on('GET', SITE_STORAGE, [])
        with pytest.raises(PlacementExhausted):
            vms.launch(_request())
        assert launch_api.count('POST', '/VirtualMachine/SetVM') == 0


class TestAlter:
    """Test VirtualMachineWorkflows.alter()."""

    def test_running_vm_stopped_reconfigured_restarted(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), RUNNING, RUNNING, STOPPED)
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOff', 't-off')
        on_task(fake_transport, '/VirtualMachine/ReconfigureVM', 't-cfg')
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOn', 't-on')

        vms.alter('vm-1', '4096:2')

        assert fake_transport.payload('POST', '/VirtualMachine/ReconfigureVM') == {
            'VirtualMachineID': 'vm-1',
            'NumCpu': 2,
            'RamAllocatedMB': 4096,
            'ResourcePoolID': 'pool-1',
        }
        assert fake_transport.resources('POST') == [
            '/VirtualMachine/vm-1/PowerOff',
            '/VirtualMachine/ReconfigureVM',
            '/VirtualMachine/vm-1/PowerOn',
        ]

    def test_stop_wait_has_no_deadline(self, vms, fake_transport, driver_config):
        """Reconfiguration waits for the stop however long it takes."""
        polls_past_deadline = int(driver_config.stop_timeout / driver_config.poll_interval) + 5
        fake_transport.on('GET', vm_path('vm-1'), *([RUNNING] * polls_past_deadline), STOPPED)
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOff', 't-off')
        on_task(fake_transport, '/VirtualMachine/ReconfigureVM', 't-cfg')
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOn', 't-on')

        vms.alter('vm-1', '4096:2')
        assert fake_transport.count('POST', '/VirtualMachine/ReconfigureVM') == 1

    def test_stopped_vm_not_restarted(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), STOPPED)
        on_task(fake_transport, '/VirtualMachine/ReconfigureVM', 't-cfg')

        vms.alter('vm-1', '4096:2')
        assert fake_transport.resources('POST') == ['/VirtualMachine/ReconfigureVM']

    def test_same_product_is_noop(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), RUNNING)
        vms.alter('vm-1', '2048:1')
        assert fake_transport.resources('POST') == []

    def test_disk_changes(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), STOPPED)
        fake_transport.on('GET', '/ResourcePool/pool-1?$filter=IsRemoved eq false', [
            {'ResourcePoolID': 'pool-1', 'Hypervisor': {'HypervisorID': 'hv-1'}},
        ])
        fake_transport.on('GET', SITE_STORAGE + " and Hypervisor/HypervisorID eq 'hv-1'", [
            {'StorageID': 'S', 'FreeSpaceKB': 100_000_000, 'CapacityKB': 200_000_000},
        ])
        on_task(fake_transport, 'VirtualMachine/AddDisk', 't-add')
        on_task(fake_transport, 'VirtualMachine/ReconfigureDisk', 't-rd')

        vms.alter('vm-1', '2048:1', [DiskChange(20), DiskChange(40, 'disk-7')])

        assert fake_transport.payload('POST', 'VirtualMachine/AddDisk') == {
            'StorageID': 'S',
            'CapacityKB': 20 * 1024 * 1024,
            'VirtualMachineID': 'vm-1',
        }
        assert fake_transport.payload('POST', 'VirtualMachine/ReconfigureDisk') == {
            'StorageID': 'S',
            'CapacityKB': 40 * 1024 * 1024,
            'VirtualMachineID': 'vm-1',
            'VirtualMachineDiskID': 'disk-7',
        }

    def test_missing_vm(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), None)
        with pytest.raises(ResourceNotFound):
            vms.alter('vm-1', '4096:2')


class TestTerminate:
    """Test VirtualMachineWorkflows.terminate()."""

    def test_remove_never_issued_when_vm_never_stops(self, vms, fake_transport, fake_clock):
        fake_transport.on('GET', vm_path('vm-1'), RUNNING)
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOff', 't-off')
        on_task(fake_transport, '/VirtualMachine/vm-1/Remove', 't-rm')

        with pytest.raises(VmNotStopped) as exc_info:
            vms.terminate('vm-1')

        assert exc_info.value.state == 'running'
        assert fake_transport.count('POST', '/VirtualMachine/vm-1/Remove') == 0
        assert fake_clock.now() >= 300

    def test_remove_issued_once_when_vm_stops(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), RUNNING, RUNNING, RUNNING, STOPPED)
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOff', 't-off')
        on_task(fake_transport, '/VirtualMachine/vm-1/Remove', 't-rm')

        vms.terminate('vm-1')
        assert fake_transport.count('POST', '/VirtualMachine/vm-1/Remove') == 1

    def test_stopped_vm_removed_directly(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), STOPPED)
        on_task(fake_transport, '/VirtualMachine/vm-1/Remove', 't-rm')

        vms.terminate('vm-1')
        assert fake_transport.resources('POST') == ['/VirtualMachine/vm-1/Remove']

    def test_missing_vm(self, vms, fake_transport):
        fake_transport.on('GET', vm_path('vm-1'), None)
        with pytest.raises(ResourceNotFound):
            vms.terminate('vm-1')


class TestPower:
    """Test power operations."""

    @pytest.mark.parametrize('operation,endpoint', [
        ('start', 'PowerOn'),
        ('reboot', 'RebootOS'),
        ('suspend', 'Suspend'),
        ('resume', 'PowerOn'),
    ])
    def test_endpoints(self, vms, fake_transport, operation, endpoint):
        on_task(fake_transport, f"/VirtualMachine/vm-1/{endpoint}", 't-1')
        getattr(vms, operation)('vm-1')
        assert fake_transport.resources('POST') == [f"/VirtualMachine/vm-1/{endpoint}"]

    def test_graceful_stop(self, vms, fake_transport):
        on_task(fake_transport, '/VirtualMachine/vm-1/ShutdownOS', 't-sd')
        vms.stop('vm-1')
        assert fake_transport.resources('POST') == ['/VirtualMachine/vm-1/ShutdownOS']

    def test_graceful_stop_falls_back_to_power_off(self, vms, fake_transport):
        fake_transport.on('POST', '/VirtualMachine/vm-1/ShutdownOS', task_ref('t-sd'))
        fake_transport.on('GET', '/TaskInfo/t-sd', task_failed({'Reason': 'VMware tools not running'}))
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOff', 't-off')

        vms.stop('vm-1')
        assert fake_transport.count('POST', '/VirtualMachine/vm-1/PowerOff') == 1

    def test_forced_stop(self, vms, fake_transport):
        on_task(fake_transport, '/VirtualMachine/vm-1/PowerOff', 't-off')
        vms.stop('vm-1', force=True)
        assert fake_transport.resources('POST') == ['/VirtualMachine/vm-1/PowerOff']


class TestCloneAndDisks:
    """Test clone() and remove_disk()."""

    def test_clone(self, vms, fake_transport):
        on_task(fake_transport, '/VirtualMachine/CloneVM', 't-clone', 'vm-2')
        fake_transport.on('GET', vm_path('vm-2'), vm_data('vm-2', power='PoweredOff'))

        clone = vms.clone('vm-1', 'copy')
        assert clone.vm_id == 'vm-2'
        assert fake_transport.payload('POST', '/VirtualMachine/CloneVM') == {
            'VirtualMachineID': 'vm-1',
            'Name': 'copy',
            'PowerOn': False,
        }

    def test_clone_without_id(self, vms, fake_transport):
        on_task(fake_transport, '/VirtualMachine/CloneVM', 't-clone', None)
        with pytest.raises(WorkflowError):
            vms.clone('vm-1', 'copy')

    def test_remove_disk(self, vms, fake_transport):
        on_task(fake_transport, '/VirtualMachine/RemoveDisk', 't-rd')
        vms.remove_disk('vm-1', 'disk-7')
        assert fake_transport.payload('POST', '/VirtualMachine/RemoveDisk') == {
            'VirtualMachineDiskID': 'disk-7',
            'VirtualMachineID': 'vm-1',
        }


class TestParseScalingSpec:
    """Test parse_scaling_spec()."""

    def test_product_only(self):
        assert parse_scaling_spec('4096:2') == ('4096:2', [])

    def test_with_disks(self):
        product, changes = parse_scaling_spec('4096:2[new:20,disk-7:40]')
        assert product == '4096:2'
        assert changes == [DiskChange(20), DiskChange(40, 'disk-7')]
        assert changes[0].is_new and not changes[1].is_new

    @pytest.mark.parametrize('spec', ['', '4096:2[new]', '4096:2[new:big]', '4096:2[new:20'])
    def test_invalid(self, spec):
        with pytest.raises(WorkflowError):
            parse_scaling_spec(spec)
