#!/usr/bin/env python3
"""CLI entry point for vstream-driver.

Noun-action subcommands:
- task:  vstream task wait <task-id>
- vm:    vstream vm launch|alter|terminate|start|stop ...
- image: vstream image list|capture|remove ...
- blob:  vstream blob ls|stat|exists|put|get|rm ...

Exit codes: 0 success, 1 driver error, 2 configuration error.
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from blob import BlobStore
from common import Clock
from config import ConfigError, DriverConfig, load_config
from errors import DriverError
from placement import PlacementSelector
from tasks import TaskTracker
from transport import Transport
from workflows import ImageWorkflows, LaunchRequest, VirtualMachineWorkflows, parse_scaling_spec

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Wired set of engine components for one configuration."""
    config: DriverConfig
    transport: Transport
    tracker: TaskTracker
    placement: PlacementSelector
    vms: VirtualMachineWorkflows
    images: ImageWorkflows
    blobs: BlobStore


def build_engine(config: DriverConfig, transport: Optional[Transport] = None,
                 clock: Optional[Clock] = None) -> Engine:
    """Wire transport, tracker, placement and workflows together."""
    clock = clock or Clock()
    transport = transport or Transport(config)
    tracker = TaskTracker(transport, config, clock)
    placement = PlacementSelector(transport)
    vms = VirtualMachineWorkflows(transport, tracker, placement, config, clock)
    images = ImageWorkflows(transport, tracker, vms, config, clock)
    blobs = BlobStore(transport, tracker, config)
    return Engine(config, transport, tracker, placement, vms, images, blobs)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _vm_summary(vm) -> dict:
    return {
        'id': vm.vm_id,
        'name': vm.name,
        'state': vm.state,
        'product': vm.product_id,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='vstream',
        description='Cloud engine driver - VM, image and blob workflows',
    )
    parser.add_argument('--config-dir', '-C', type=Path, help='Config directory (default: discovered)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    nouns = parser.add_subparsers(dest='noun')

    # task
    task = nouns.add_parser('task', help='Asynchronous task utilities')
    task_sub = task.add_subparsers(dest='action')
    wait = task_sub.add_parser('wait', help='Wait for a task to finish')
    wait.add_argument('task_id')

    # vm
    vm = nouns.add_parser('vm', help='Virtual machine lifecycle')
    vm_sub = vm.add_subparsers(dest='action')
    get = vm_sub.add_parser('get', help='Show a VM')
    get.add_argument('vm_id')
    launch = vm_sub.add_parser('launch', help='Launch a VM from an image')
    launch.add_argument('--image', required=True, help='Source image (template) id')
    launch.add_argument('--name', required=True, help='VM name')
    launch.add_argument('--site', required=True, help='Site id')
    launch.add_argument('--network', help='Network id (required)')
    launch.add_argument('--product', help='<ramMB>:<cpu> (default from config)')
    launch.add_argument('--description', default='')
    alter = vm_sub.add_parser('alter', help='Resize a VM')
    alter.add_argument('vm_id')
    alter.add_argument('scaling', help="<ramMB>:<cpu>[<disk-id|new>:<sizeGB>,...]")
    for action in ('terminate', 'start', 'reboot', 'suspend', 'resume'):
        p = vm_sub.add_parser(action, help=f'{action.capitalize()} a VM')
        p.add_argument('vm_id')
    stop = vm_sub.add_parser('stop', help='Stop a VM')
    stop.add_argument('vm_id')
    stop.add_argument('--force', action='store_true', help='Power off instead of OS shutdown')

    # image
    image = nouns.add_parser('image', help='Machine images')
    image_sub = image.add_subparsers(dest='action')
    image_sub.add_parser('list', help='List templates')
    capture = image_sub.add_parser('capture', help='Capture a VM as an image')
    capture.add_argument('vm_id')
    capture.add_argument('name')
    capture.add_argument('--description', default='')
    remove = image_sub.add_parser('remove', help='Remove an image')
    remove.add_argument('image_id')

    # blob
    blob = nouns.add_parser('blob', help='Objects on storage bins')
    blob_sub = blob.add_subparsers(dest='action')
    ls = blob_sub.add_parser('ls', help='List storage bins, or objects in a bucket')
    ls.add_argument('bucket', nargs='?')
    stat = blob_sub.add_parser('stat', help='Show object size')
    stat.add_argument('bucket')
    stat.add_argument('name')
    exists = blob_sub.add_parser('exists', help='Check that an object or storage bin exists')
    exists.add_argument('location', help='<storage-name>[/sub/dir/object]')
    put = blob_sub.add_parser('put', help='Upload a file')
    put.add_argument('bucket', help='<storage-name>[/sub/dir]')
    put.add_argument('name')
    put.add_argument('file', type=Path)
    get_blob = blob_sub.add_parser('get', help='Download an object')
    get_blob.add_argument('bucket')
    get_blob.add_argument('name')
    get_blob.add_argument('--output', '-o', type=Path, help='Write to file (default: stdout)')
    rm = blob_sub.add_parser('rm', help='Delete an object')
    rm.add_argument('bucket')
    rm.add_argument('name')

    return parser


def _run_task(engine: Engine, args) -> int:
    result = engine.tracker.wait(args.task_id)
    print(result if result is not None else '')
    return 0


def _run_vm(engine: Engine, args) -> int:
    vms = engine.vms
    if args.action == 'get':
        vm = vms.get_vm(args.vm_id)
        if vm is None:
            print(f"Error: VM {args.vm_id} not found")
            return 1
        _print_json(_vm_summary(vm))
    elif args.action == 'launch':
        vm = vms.launch(LaunchRequest(
            image_id=args.image,
            name=args.name,
            site_id=args.site,
            network_id=args.network,
            description=args.description,
            product_id=args.product,
        ))
        _print_json(_vm_summary(vm))
    elif args.action == 'alter':
        product_id, changes = parse_scaling_spec(args.scaling)
        _print_json(_vm_summary(vms.alter(args.vm_id, product_id, changes)))
    elif args.action == 'terminate':
        vms.terminate(args.vm_id)
    elif args.action == 'stop':
        vms.stop(args.vm_id, force=args.force)
    else:
        getattr(vms, args.action)(args.vm_id)
    return 0


def _run_image(engine: Engine, args) -> int:
    if args.action == 'list':
        _print_json([{'id': img.image_id, 'name': img.name, 'os': img.os_family}
                     for img in engine.images.list_images()])
    elif args.action == 'capture':
        image = engine.images.capture(args.vm_id, args.name, args.description)
        _print_json({'id': image.image_id, 'name': image.name, 'os': image.os_family})
    else:
        engine.images.remove(args.image_id)
    return 0


def _run_blob(engine: Engine, args) -> int:
    blobs = engine.blobs
    if args.action == 'ls':
        _print_json([{'name': e.name, 'path': e.path, 'dir': e.is_directory, 'size': e.size}
                     for e in blobs.list(args.bucket)])
    elif args.action == 'stat':
        size = blobs.get_size(args.bucket, args.name)
        if size is None:
            print(f"Error: {args.bucket}/{args.name} not found")
            return 1
        print(size)
    elif args.action == 'exists':
        found = blobs.exists(args.location)
        print('yes' if found else 'no')
        return 0 if found else 1
    elif args.action == 'put':
        with open(args.file, 'rb') as f:
            blobs.put(args.bucket, args.name, f, args.file.stat().st_size)
    elif args.action == 'get':
        content = blobs.get(args.bucket, args.name)
        if args.output:
            args.output.write_bytes(content)
        else:
            sys.stdout.buffer.write(content)
    else:
        blobs.remove(args.bucket, args.name)
    return 0


HANDLERS = {
    'task': _run_task,
    'vm': _run_vm,
    'image': _run_image,
    'blob': _run_blob,
}


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.noun or not getattr(args, 'action', None):
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )

    try:
        config = load_config(args.config_dir)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    engine = build_engine(config)
    try:
        return HANDLERS[args.noun](engine, args)
    except DriverError as e:
        logger.error(f"{args.noun} {args.action} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
