import os
import sys
import signal
import pathlib
import asyncio
import argparse
import logging
import logging.handlers
import typing

from photosync import __version__
from photosync.conf import Config
from photosync.error import BaseError
from photosync.blob.blob_manager import BlobManager
from photosync.blob_exchange.server import BlobExchangeServer
from photosync.blob_exchange.client import BlobExchangeClient

log = logging.getLogger('photosync')
log.addHandler(logging.NullHandler())


class GracefulExit(SystemExit):
    code = 1


async def _task_decorator(coro: typing.Coroutine):
    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except BaseException as e:
        log.exception('unhandled error in task')
        raise e


def task_factory(loop: asyncio.AbstractEventLoop, coro: typing.Coroutine, **kwargs):
    task = asyncio.Task(_task_decorator(coro), loop=loop, **kwargs)
    if task._source_traceback:
        del task._source_traceback[-1]
    return task


def get_argument_parser():
    root = argparse.ArgumentParser(
        'photosync', description='Exchange photos with a photo server over UDP.', allow_abbrev=False
    )
    root.add_argument(
        '-v', '--version', dest='cli_version', action="store_true",
        help='Show photosync version and exit.'
    )
    root.add_argument(
        '--quiet', dest='quiet', action="store_true",
        help='Disable all console output.'
    )
    root.add_argument(
        '--verbose', dest='verbose', action="store_true",
        help='Enable debug output.'
    )
    root.set_defaults(command=None)
    Config.contribute_to_argparse(root)
    sub = root.add_subparsers(metavar='COMMAND')

    serve = sub.add_parser('serve', help='Serve stored photos and accept uploads.')
    serve.set_defaults(command='serve')

    fetch = sub.add_parser('fetch', help='Download a photo from the server.')
    fetch.add_argument('name', help='Photo name, the .png suffix is optional.')
    fetch.add_argument('--timeout', type=float, default=10.0, help='Seconds to wait for the photo.')
    fetch.set_defaults(command='fetch')

    push = sub.add_parser('push', help='Upload a stored photo to the server.')
    push.add_argument('name', help='Photo name, the .png suffix is optional.')
    push.add_argument('--file', dest='file', default=None,
                      help='Store this file under the given name before uploading it.')
    push.add_argument('--timeout', type=float, default=10.0, help='Seconds to wait for the acknowledgment.')
    push.set_defaults(command='push')
    return root


def ensure_directory_exists(path: str):
    if not os.path.isdir(path):
        pathlib.Path(path).mkdir(parents=True, exist_ok=True)


def setup_logging(args, conf: Config):
    default_formatter = logging.Formatter("%(asctime)s %(levelname)-8s %(name)s:%(lineno)d: %(message)s")
    file_handler = logging.handlers.RotatingFileHandler(
        conf.log_file_path, maxBytes=2097152, backupCount=5
    )
    file_handler.setFormatter(default_formatter)
    log.addHandler(file_handler)

    if not args.quiet:
        handler = logging.StreamHandler()
        handler.setFormatter(default_formatter)
        log.addHandler(handler)

    if args.verbose:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.INFO)


def run_server(conf: Config, loop: asyncio.AbstractEventLoop):
    blob_manager = BlobManager(loop, conf.photos_dir, conf)
    server = BlobExchangeServer(loop, blob_manager, conf)

    def __exit():
        raise GracefulExit()

    try:
        loop.add_signal_handler(signal.SIGINT, __exit)
        loop.add_signal_handler(signal.SIGTERM, __exit)
    except NotImplementedError:
        pass  # Not implemented on Windows

    async def start():
        await blob_manager.setup()
        server.start_server(conf.udp_port, conf.network_interface)
        await server.started_listening.wait()

    try:
        loop.run_until_complete(start())
        loop.run_forever()
    except (GracefulExit, KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        loop.run_until_complete(server.stop_server())
        blob_manager.stop()
    return 0


async def run_client(args, conf: Config, loop: asyncio.AbstractEventLoop) -> int:
    blob_manager = BlobManager(loop, conf.photos_dir, conf)
    await blob_manager.setup()
    client = BlobExchangeClient(loop, blob_manager, conf, (conf.server_host, conf.server_port))
    await client.connect()
    try:
        if args.command == 'fetch':
            blob_id = await client.download_blob(args.name, args.timeout)
            print(blob_manager.get_blob_path(blob_id))
            return 0
        if args.file:
            with open(args.file, 'rb') as handle:
                await blob_manager.save_blob(args.name, handle.read())
        if await client.upload_blob(args.name, args.timeout):
            print(f"uploaded {args.name}")
            return 0
        return 1
    except asyncio.TimeoutError:
        print(f"timed out waiting for the server at {conf.server}")
        return 1
    except (BaseError, OSError) as err:
        print(str(err))
        return 1
    finally:
        client.close()


def main(argv=None):
    argv = argv or sys.argv[1:]
    parser = get_argument_parser()
    args = parser.parse_args(argv)

    if args.cli_version:
        print(f"photosync {__version__}")
        return 0
    if args.command is None:
        parser.print_help()
        return 0

    conf = Config.create_from_arguments(args)
    for directory in (conf.data_dir, conf.photos_dir):
        ensure_directory_exists(directory)
    setup_logging(args, conf)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    loop.set_task_factory(task_factory)
    if args.verbose:
        loop.set_debug(True)
    try:
        if args.command == 'serve':
            return run_server(conf, loop)
        return loop.run_until_complete(run_client(args, conf, loop))
    finally:
        if hasattr(loop, 'shutdown_asyncgens'):
            loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
        asyncio.set_event_loop(None)


if __name__ == "__main__":
    sys.exit(main())
