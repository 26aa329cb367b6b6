import base64

import pytest

from dkimwrite import MailMessage, FrozenMessage

from typing import Dict, List


class RecordingSigner:
    """Signer stand-in that records every FrozenMessage it is given."""

    calls: List[FrozenMessage]

    def __init__(self, sigline: str = 'DKIM-Signature: v=1; a=test; b=xyz'):
        self.sigline = sigline
        self.calls = list()

    def sign(self, frozen: FrozenMessage) -> str:
        self.calls.append(frozen)
        return self.sigline


@pytest.fixture
def sample_email_bytes() -> bytes:
    """A simple email message in bytes format."""
    return (b'From: a@x\r\n'
            b'To: b@x\r\n'
            b'X-Mailer: foo\r\n'
            b'Subject: Test email\r\n'
            b'\r\n'
            b'Hello\r\n')


@pytest.fixture
def mail_message(sample_email_bytes: bytes) -> MailMessage:
    """Create a MailMessage from a sample email."""
    return MailMessage(sample_email_bytes)


@pytest.fixture
def recording_signer() -> RecordingSigner:
    return RecordingSigner()


@pytest.fixture
def sample_ed25519_key_pair() -> Dict[str, bytes]:
    """Generate a sample ed25519 key pair for testing."""
    try:
        from nacl.signing import SigningKey
    except ImportError:
        pytest.skip("PyNaCl not installed, skipping ed25519 tests")

    # Generate a key pair
    private_key = SigningKey.generate()
    public_key = private_key.verify_key

    # Return base64 encoded keys
    return {
        'private': base64.b64encode(bytes(private_key)),
        'public': base64.b64encode(public_key.encode())
    }
