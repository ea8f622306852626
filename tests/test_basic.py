"""Basic sanity tests"""

import pytest


def test_imports():
    """Test that all modules can be imported"""
    from zimtransport import config, errors, models
    from zimtransport.helpers import checksum, chunks, compression, encryption, stream_copy
    from zimtransport.transport import (
        BluetoothTransport, DirectWiFiTransport, ExternalStorageTransport,
        NetworkShareTransport, SftpTransport
    )
    assert config.MANIFEST_FILE_NAME == "zim-manifest.json"


def test_python_version():
    """Test Python version is adequate"""
    import sys
    assert sys.version_info >= (3, 10)


def test_cryptography_import():
    """Test that the cryptography backend provides AES-GCM"""
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM
        assert len(AESGCM.generate_key(bit_length=256)) == 32
    except ImportError as e:
        pytest.fail(f"cryptography not available: {e}")


def test_every_transport_implements_contract():
    """Test that each medium is a concrete Transport"""
    from zimtransport.transport import (
        Transport, BluetoothTransport, DirectWiFiTransport, ExternalStorageTransport,
        NetworkShareTransport, SftpTransport
    )
    for cls in (BluetoothTransport, DirectWiFiTransport, ExternalStorageTransport,
                NetworkShareTransport, SftpTransport):
        assert issubclass(cls, Transport)
        assert not cls.__abstractmethods__
