from .base import Transport
from .bluetooth import BluetoothTransport
from .bluetooth_adapter import BluetoothAdapter, DiscoveredBluetoothDevice, RfcommSocketAdapter
from .direct_wifi import DirectWiFiTransport
from .external_storage import DriveInformation, ExternalStorageTransport
from .ledger import PayloadLayout, ResumeLedger
from .network_share import NetworkShareTransport, ShareCredential
from .pipeline import PipelinePolicy
from .sftp import SftpTransport
from .sftp_client import ParamikoSftpClient, SftpClient, SftpFileInfo

__all__ = [
    'Transport',
    'BluetoothTransport',
    'BluetoothAdapter',
    'DiscoveredBluetoothDevice',
    'RfcommSocketAdapter',
    'DirectWiFiTransport',
    'DriveInformation',
    'ExternalStorageTransport',
    'PayloadLayout',
    'ResumeLedger',
    'NetworkShareTransport',
    'ShareCredential',
    'PipelinePolicy',
    'SftpTransport',
    'ParamikoSftpClient',
    'SftpClient',
    'SftpFileInfo'
]
