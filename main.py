import asyncio
import argparse
import getpass
import logging
import platform
import socket
import sys
from pathlib import Path

from zimtransport import __version__
from zimtransport.config import (
    SFTP_DEFAULT_BASE_PATH, TransportConfig, load_config, load_sftp_settings, SftpSettings
)
from zimtransport.helpers import checksum
from zimtransport.models import (
    MigrationItemSummary, MigrationItemType, TransferManifest, TransferMetadata, TransportMethod
)
from zimtransport.transport import (
    BluetoothTransport, DirectWiFiTransport, ExternalStorageTransport,
    NetworkShareTransport, ParamikoSftpClient, RfcommSocketAdapter, SftpTransport
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('zimtransport.log')
    ]
)
logger = logging.getLogger(__name__)

METHODS = {
    'external': TransportMethod.EXTERNAL_STORAGE,
    'share': TransportMethod.NETWORK_SHARE,
    'sftp': TransportMethod.SFTP,
    'wifi': TransportMethod.DIRECT_WIFI,
    'bluetooth': TransportMethod.BLUETOOTH,
}


def collect_files(source: Path):
    """(path, relative path) pairs for a file or a directory tree"""
    if source.is_file():
        return [(source, source.name)]
    return [
        (path, path.relative_to(source).as_posix())
        for path in sorted(source.rglob('*')) if path.is_file()
    ]


def load_transport_config(args) -> TransportConfig:
    if args.config:
        return load_config(args.config)
    return TransportConfig()


def sftp_settings(args) -> SftpSettings:
    settings = load_sftp_settings(args.config) if args.config else SftpSettings()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.username:
        settings.username = args.username
    if args.key_file:
        settings.private_key_path = args.key_file
    if args.remote_path:
        settings.remote_base_path = args.remote_path
    if not settings.password and not settings.private_key_path:
        settings.password = getpass.getpass(f"Password for {settings.username}@{settings.host}: ")
    return settings


def create_transport(args, receiving: bool):
    """Build the transport selected on the command line"""
    config = load_transport_config(args)
    passphrase = args.passphrase
    # --compress/--no-compress override the medium default only when given
    compress = bool(args.compress)

    if args.medium in ('external', 'share'):
        if not args.path:
            raise ValueError(f"--path is required for the {args.medium} medium")
        if args.medium == 'external':
            return ExternalStorageTransport(args.path, passphrase=passphrase,
                                            compress=compress,
                                            chunk_size=args.chunk_size,
                                            transport_config=config)
        return NetworkShareTransport(args.path, passphrase=passphrase,
                                     compress=compress,
                                     chunk_size=args.chunk_size,
                                     transport_config=config)

    if args.medium == 'sftp':
        settings = sftp_settings(args)
        return SftpTransport(
            ParamikoSftpClient.from_settings(settings),
            remote_base_path=settings.remote_base_path,
            passphrase=passphrase or settings.encryption_passphrase,
            compress=(settings.compress_before_upload if args.compress is None
                      else args.compress),
            chunk_size=args.chunk_size,
            transport_config=config
        )

    if args.medium == 'bluetooth':
        if not receiving and not args.host:
            raise ValueError("--host must name the peer device address for bluetooth")
        return BluetoothTransport(RfcommSocketAdapter.from_config(config),
                                  remote_address=None if receiving else args.host,
                                  is_server=receiving, passphrase=passphrase,
                                  compress=compress, transport_config=config)

    host = args.host or ('0.0.0.0' if receiving else 'localhost')
    return DirectWiFiTransport(host, port=args.port, is_server=receiving,
                               passphrase=passphrase, compress=compress,
                               transport_config=config)


def log_progress(progress):
    logger.debug(
        f"{progress.item_name}: {progress.percent:.1f}% "
        f"({progress.bytes_per_second / 1024:.0f} KB/s)"
    )


async def run_probe(args):
    """Check that the medium is reachable and writable"""
    listening = args.medium in ('wifi', 'bluetooth')
    async with create_transport(args, receiving=listening) as transport:
        ok = await transport.test_connection()
    if ok:
        logger.info(f"{args.medium} medium is ready")
    else:
        logger.error(f"{args.medium} medium is not reachable")
        sys.exit(1)


async def run_send(args):
    """Send a file or directory tree"""
    source = Path(args.source)
    if not source.exists():
        raise FileNotFoundError(f"Source not found: {source}")
    files = collect_files(source)

    manifest = TransferManifest(
        source_hostname=socket.gethostname(),
        source_os_version=platform.platform(),
        transport_method=METHODS[args.medium],
        items=[
            MigrationItemSummary(display_name=rel, item_type=MigrationItemType.FILE_GROUP,
                                 estimated_size_bytes=path.stat().st_size)
            for path, rel in files
        ]
    )
    logger.info(f"Sending {len(files)} file(s), {manifest.total_estimated_size_bytes} bytes")

    async with create_transport(args, receiving=False) as transport:
        if not await transport.test_connection():
            raise ConnectionError(f"{args.medium} medium is not reachable")
        await transport.send_manifest(manifest)
        completed = await transport.get_completed_transfers()
        if completed:
            logger.info(f"{len(completed)} item(s) already delivered; unchanged files are skipped")

        for path, rel in files:
            digest = await checksum.compute_file_async(path)
            metadata = TransferMetadata(relative_path=rel, size_bytes=path.stat().st_size,
                                        checksum=digest)
            with open(path, 'rb') as f:
                await transport.send(f, metadata, progress=log_progress)

    logger.info("Send completed")


async def run_receive(args):
    """Receive every manifest item into the destination directory"""
    destination = Path(args.dest)
    destination.mkdir(parents=True, exist_ok=True)

    async with create_transport(args, receiving=True) as transport:
        if not await transport.test_connection():
            raise ConnectionError(f"{args.medium} medium is not reachable")
        manifest = await transport.receive_manifest()
        logger.info(f"Manifest from {manifest.source_hostname}: {len(manifest.items)} item(s)")

        for item in manifest.items:
            if not item.is_selected:
                continue
            metadata = TransferMetadata(relative_path=item.display_name,
                                        size_bytes=item.estimated_size_bytes)
            target = destination.joinpath(*metadata.relative_path.split('/'))
            target.parent.mkdir(parents=True, exist_ok=True)
            stream = await transport.receive(metadata)
            with stream, open(target, 'wb') as out:
                while block := stream.read(1024 * 1024):
                    out.write(block)
            logger.info(f"Received {metadata.relative_path}")

    logger.info("Receive completed")


async def run_estimate(args):
    """Report payload size and the slowest-medium (Bluetooth) duration"""
    source = Path(args.source)
    total = sum(path.stat().st_size for path, _ in collect_files(source))
    eta = BluetoothTransport.estimate_transfer_time(total)
    logger.info(f"{source}: {total} bytes, about {eta} over Bluetooth")


def create_parser():
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        description=f'ZIM Transport v{__version__} - resumable migration payload transfer',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Stage a directory on a USB drive
  python main.py send --medium external --path /media/usb --source ./profile

  # Restore it on the destination machine
  python main.py receive --medium external --path /media/usb --dest ./restored

  # Peer-to-peer over the LAN (start the receiver first)
  python main.py receive --medium wifi --dest ./restored
  python main.py send --medium wifi --host 192.168.1.20 --source ./profile

  # Upload to a NAS over SFTP
  python main.py send --medium sftp --host nas.local --username backup --source ./profile

  # Small payloads over Bluetooth when there is no network
  python main.py receive --medium bluetooth --dest ./restored
  python main.py send --medium bluetooth --host 00:1A:7D:DA:71:13 --source ./notes
        """
    )

    # Mode selection
    parser.add_argument(
        'mode',
        choices=['probe', 'send', 'receive', 'estimate'],
        help='Execution mode'
    )
    parser.add_argument(
        '--medium',
        default='external',
        choices=sorted(METHODS),
        help='Transport medium (default: external)'
    )

    # Medium location
    parser.add_argument(
        '--path',
        help='Staging path for external storage or network share'
    )
    parser.add_argument(
        '--host',
        help='Peer, SFTP host or Bluetooth device address'
    )
    parser.add_argument(
        '--port',
        type=int,
        help='Peer or SFTP port'
    )
    parser.add_argument(
        '--username',
        help='SFTP user name'
    )
    parser.add_argument(
        '--key-file',
        help='SFTP private key file'
    )
    parser.add_argument(
        '--remote-path',
        help=f'SFTP base path (default: {SFTP_DEFAULT_BASE_PATH})'
    )

    # Payload
    parser.add_argument(
        '--source',
        default='.',
        help='File or directory to send or estimate'
    )
    parser.add_argument(
        '--dest',
        default='./received',
        help='Destination directory for receive (default: ./received)'
    )
    parser.add_argument(
        '--passphrase',
        help='Encrypt payloads with this passphrase'
    )
    parser.add_argument(
        '--compress',
        action=argparse.BooleanOptionalAction,
        default=None,
        help='Gzip payloads before transfer (SFTP compresses unless --no-compress)'
    )
    parser.add_argument(
        '--chunk-size',
        type=int,
        help='Split payloads into chunks of this many bytes'
    )
    parser.add_argument(
        '--config',
        help='YAML configuration file'
    )

    # Logging
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Minimal output'
    )

    return parser


async def main():
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args()

    # Adjust logging level
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    # Route to appropriate mode
    try:
        if args.mode == 'probe':
            await run_probe(args)
        elif args.mode == 'send':
            await run_send(args)
        elif args.mode == 'receive':
            await run_receive(args)
        elif args.mode == 'estimate':
            await run_estimate(args)
    except KeyboardInterrupt:
        logger.info("\nShutdown requested by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=args.debug)
        sys.exit(1)


def cli():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    cli()
