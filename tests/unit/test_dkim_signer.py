import pytest
from io import BytesIO
from pathlib import Path

import dkim

from dkimwrite import (DkimSigner, FrozenMessage, MailMessage, SignedMessage, ConfigurationError,
                       SigningError)

from typing import Dict


class TestDkimSigner:

    def test_invalid_algorithm(self) -> None:
        with pytest.raises(ConfigurationError):
            DkimSigner('example.org', 'default', b'key', algorithm='rsa-sha1')

    def test_invalid_canonicalization(self) -> None:
        with pytest.raises(ConfigurationError):
            DkimSigner('example.org', 'default', b'key', canonicalization='relaxed/loose')

    def test_canonicalization_body_defaults_to_simple(self) -> None:
        signer = DkimSigner('example.org', 'default', b'key', canonicalization='relaxed')
        assert signer.canonicalize == (b'relaxed', b'simple')

    def test_missing_from(self) -> None:
        signer = DkimSigner('example.org', 'default', b'key')
        frozen = FrozenMessage(['To: b@x'], b'body\r\n')

        with pytest.raises(SigningError, match='from'):
            signer.sign(frozen)

    def test_bad_ed25519_key(self) -> None:
        signer = DkimSigner('example.org', 'default', b'bm90IGEga2V5', algorithm='ed25519-sha256')
        frozen = FrozenMessage(['From: a@example.org'], b'body\r\n')

        with pytest.raises(SigningError):
            signer.sign(frozen)

    def test_dkim_exception_wrapped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def mock_sign(*args: object, **kwargs: object) -> bytes:
            raise dkim.KeyFormatError('unparsable key')

        monkeypatch.setattr(dkim, 'sign', mock_sign)
        signer = DkimSigner('example.org', 'default', b'key')
        frozen = FrozenMessage(['From: a@example.org'], b'body\r\n')

        with pytest.raises(SigningError, match='unparsable key'):
            signer.sign(frozen)

    def test_signs_frozen_bytes(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen = dict()

        def mock_sign(message: bytes, selector: bytes, domain: bytes, privkey: bytes, **kwargs: object) -> bytes:
            seen['message'] = message
            seen['selector'] = selector
            seen['domain'] = domain
            seen.update(kwargs)
            return b'DKIM-Signature: v=1; a=rsa-sha256;\r\n b=abc\r\n'

        monkeypatch.setattr(dkim, 'sign', mock_sign)
        signer = DkimSigner('example.org', 'sel', b'key', canonicalization='simple/relaxed',
                            signheaders=['From', 'Subject'])
        frozen = FrozenMessage(['From: a@example.org', 'Subject: hi'], b'body\r\n')

        assert signer.sign(frozen) == 'DKIM-Signature: v=1; a=rsa-sha256;\r\n b=abc'
        assert seen['message'] == b'From: a@example.org\r\nSubject: hi\r\n\r\nbody\r\n'
        assert seen['selector'] == b'sel'
        assert seen['domain'] == b'example.org'
        assert seen['canonicalize'] == (b'simple', b'relaxed')
        assert seen['include_headers'] == [b'From', b'Subject']

    def test_ed25519_sign_and_verify(self, sample_ed25519_key_pair: Dict[str, bytes]) -> None:
        """Signed output verifies against the matching public key."""
        signer = DkimSigner('example.org', 'test', sample_ed25519_key_pair['private'],
                            algorithm='ed25519-sha256')
        message = MailMessage(b'From: a@example.org\nTo: b@example.com\nSubject: hi\n\n')
        message.set_content('Café\n')
        out = BytesIO()
        SignedMessage(message, signer).write_to(out)

        signed = out.getvalue()
        assert signed.startswith(b'DKIM-Signature: ')
        assert b'a=ed25519-sha256' in signed

        record = b'v=DKIM1; k=ed25519; p=' + sample_ed25519_key_pair['public']

        def dnsfunc(name: bytes, timeout: int = 5) -> bytes:
            return record

        assert dkim.verify(signed, dnsfunc=dnsfunc)


class TestFromConfig:

    def test_missing_domain(self) -> None:
        with pytest.raises(ConfigurationError, match='domain'):
            DkimSigner.from_config({'privkey': '/nonexistent'})

    def test_missing_privkey(self) -> None:
        with pytest.raises(ConfigurationError, match='privkey'):
            DkimSigner.from_config({'domain': 'example.org'})

    def test_unreadable_privkey(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            DkimSigner.from_config({'domain': 'example.org', 'privkey': str(tmp_path / 'missing.key')})

    def test_from_config(self, tmp_path: Path) -> None:
        keyfile = tmp_path / 'default.key'
        keyfile.write_bytes(b'secret\n')
        signer = DkimSigner.from_config({
            'domain': 'example.org',
            'privkey': str(keyfile),
            'selector': 'sel',
            'algorithm': 'ed25519-sha256',
            'canonicalization': 'relaxed/relaxed',
            'signheader': 'From',
        })

        assert signer.privkey == b'secret'
        assert signer.selector == 'sel'
        assert signer.algorithm == 'ed25519-sha256'
        assert signer.canonicalize == (b'relaxed', b'relaxed')
        assert signer.signheaders == ['From']
        assert signer.identity is None
