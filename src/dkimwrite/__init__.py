# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
__author__ = 'Konstantin Ryabitsev <konstantin@linuxfoundation.org>'

import sys
import os
import re

import argparse
import base64
import binascii
import subprocess
import logging

from typing import Optional, List, Tuple, Dict, Union, Any, BinaryIO, Iterable
from io import BytesIO

GitConfigType = Dict[str, Union[str, List[str]]]

logger: logging.Logger = logging.getLogger(__name__)

# Hardcoded defaults
DKIM_HDR = 'DKIM-Signature'
NL = b'\r\n'

REQ_HDRS: List[str] = ['from']
ALGORITHMS: List[str] = ['rsa-sha256', 'ed25519-sha256']
CANONICALIZATIONS: List[str] = ['simple', 'relaxed']
ENCODINGS: List[str] = ['7bit', '8bit', 'binary', 'quoted-printable', 'base64']

# RFC 5322 line length limit, not counting CRLF
MAXLINELEN = 998
# 57 input bytes make one 76-character base64 line
B64CHUNK = 57
COPYBUFSIZE = 8192

# Quick cache for key info
KEYCACHE: Dict[Union[str, bytes], Any] = dict()
# Quick cache for config settings
CONFIGCACHE: Dict[str, GitConfigType] = dict()

# My version
__VERSION__ = '0.1.0-dev'


class Error(Exception):
    """Base exception for dkimwrite errors.

    Args:
        message: Error description.
        errors: Optional list of detailed error messages.
    """

    errors: Optional[List[str]]

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        s = super().__str__()
        if self.errors:
            s = '%s: (%s)' % (s, ', '.join(self.errors))
        return s


class MessagingError(Error):
    """Raised when a message is malformed or cannot be prepared for writing."""


class SigningError(Error):
    """Raised when the signer cannot produce a signature header."""


class ConfigurationError(Error):
    """Raised when configuration is invalid or missing."""


def getbytes(line: str) -> bytes:
    """Transcode header text by keeping the low 8 bits of each character.

    This is deliberately not a text encoding: header text is expected to
    be 7-bit (or at worst latin-1), and anything wider is truncated.
    """
    return bytes(ord(c) & 0xff for c in line)


def writeln(fh: BinaryIO, line: Optional[str] = None) -> None:
    if line is not None:
        fh.write(getbytes(line))
    fh.write(NL)


def _hname(line: str) -> str:
    return line.split(':', 1)[0].strip().lower()


class _PassthroughEncoder:
    """Writes data unchanged (7bit, 8bit and binary)."""

    def __init__(self, fh: BinaryIO):
        self.fh = fh

    def write(self, data: bytes) -> None:
        self.fh.write(data)

    def flush(self) -> None:
        self.fh.flush()

    def close(self) -> None:
        # The underlying buffer belongs to the caller
        self.flush()


class _Base64Encoder(_PassthroughEncoder):
    """Base64 encoding in 76-column lines, each terminated with CRLF."""

    def __init__(self, fh: BinaryIO):
        super().__init__(fh)
        self._pending = b''

    def write(self, data: bytes) -> None:
        self._pending += data
        full = len(self._pending) - len(self._pending) % B64CHUNK
        for at in range(0, full, B64CHUNK):
            self.fh.write(base64.b64encode(self._pending[at:at + B64CHUNK]) + NL)
        self._pending = self._pending[full:]

    def close(self) -> None:
        if self._pending:
            self.fh.write(base64.b64encode(self._pending) + NL)
            self._pending = b''
        super().close()


class _QuotedPrintableEncoder(_PassthroughEncoder):
    """Quoted-printable encoding with CRLF line breaks.

    Soft line breaks depend on the whole line, so data is held until close.
    """

    def __init__(self, fh: BinaryIO):
        super().__init__(fh)
        self._pending = b''

    def write(self, data: bytes) -> None:
        self._pending += data

    def close(self) -> None:
        if self._pending:
            data = self._pending.replace(b'\r\n', b'\n')
            encoded = binascii.b2a_qp(data, quotetabs=False, istext=True, header=False)
            self.fh.write(encoded.replace(b'\n', NL))
            self._pending = b''
        super().close()


def get_encoder(fh: BinaryIO, encoding: str) -> _PassthroughEncoder:
    """Wrap a binary stream with a Content-Transfer-Encoding filter.

    Args:
        fh: Writable binary stream receiving the encoded data.
        encoding: Transfer encoding name (case-insensitive).

    Returns:
        An object with write(), flush() and close(). Closing it flushes
        any buffered data into fh but leaves fh open.

    Raises:
        MessagingError: If the encoding is not known.
    """
    encoding = encoding.strip().lower()
    if encoding in ('7bit', '8bit', 'binary'):
        return _PassthroughEncoder(fh)
    if encoding == 'base64':
        return _Base64Encoder(fh)
    if encoding == 'quoted-printable':
        return _QuotedPrintableEncoder(fh)
    raise MessagingError('Unknown Content-Transfer-Encoding: %s' % encoding)


def _is_7bit_clean(data: bytes) -> bool:
    if b'\x00' in data:
        return False
    if re.search(rb'[\x80-\xff]', data):
        return False
    return _lines_fit(data)


def _lines_fit(data: bytes) -> bool:
    for line in data.split(b'\n'):
        if len(line.rstrip(b'\r')) > MAXLINELEN:
            return False
    return True


def choose_encoding(data: bytes, istext: bool = True, allow_8bit: bool = False) -> str:
    """Pick a Content-Transfer-Encoding for the given payload.

    Args:
        data: Payload bytes as they will be fed to the encoder.
        istext: Whether the payload is text (quoted-printable is only
            considered for text).
        allow_8bit: Whether 8bit may be used for non-ASCII text.

    Returns:
        One of '7bit', '8bit', 'quoted-printable' or 'base64'.
    """
    if _is_7bit_clean(data):
        return '7bit'
    if not istext:
        return 'base64'
    if allow_8bit and b'\x00' not in data and _lines_fit(data):
        return '8bit'
    nonascii = len(re.findall(rb'[\x00\x80-\xff]', data))
    # mostly ascii text stays readable as quoted-printable
    if nonascii * 3 <= len(data):
        return 'quoted-printable'
    return 'base64'


class MailMessage:
    """RFC2822 email message that can be edited before it is written out.

    The body is held in one of three states: already-materialized
    ``content`` bytes (as parsed), an open ``content_stream`` to be read
    on demand, or pending content set with :meth:`set_content` that still
    needs a transfer encoding applied.

    Args:
        msgdata: Optional raw message bytes in RFC2822 format.

    Attributes:
        headers: Header lines, unterminated, continuation lines folded in
            with CRLF.
        content: Materialized body bytes, or None.
        content_stream: Readable binary stream positioned at the body, or None.
        saved: False while changes are pending a call to save_changes().
        modified: True once the content has been replaced in memory.
    """

    headers: List[str]
    content: Optional[bytes]
    content_stream: Optional[BinaryIO]
    saved: bool
    modified: bool

    def __init__(self, msgdata: Optional[bytes] = None):
        self.headers = list()
        self.content = None
        self.content_stream = None
        self.saved = False
        self.modified = False
        self._data: Union[None, str, bytes] = None
        self._encoding: Optional[str] = None
        self._allow_8bit = False
        self._content_offset: Optional[int] = None
        self._stream_read = False

        if msgdata is not None:
            self.load_from_bytes(msgdata)

    @classmethod
    def from_file(cls, fh: BinaryIO) -> 'MailMessage':
        """Parse headers from fh and leave the body to be read from it later."""
        msg = cls()
        msg._parse_headers(fh)
        msg.content_stream = fh
        if fh.seekable():
            msg._content_offset = fh.tell()
        msg.saved = True
        return msg

    def load_from_bytes(self, msgdata: bytes) -> None:
        """Parse message data and populate headers and body.

        Args:
            msgdata: Raw RFC2822 message bytes.

        Raises:
            MessagingError: If the data is not a valid RFC2822 message.
        """
        with BytesIO(msgdata) as fh:
            self._parse_headers(fh)
            self.content = fh.read()
        self.content_stream = None
        self.modified = False
        self.saved = True

    def _parse_headers(self, fh: BinaryIO) -> None:
        # We use simplest parsing -- using Python's email module would be overkill
        self.headers = list()
        while True:
            line = fh.readline()
            if not len(line):
                break

            if not len(line.strip()):
                break

            sline = line.rstrip(b'\r\n').decode('latin-1')
            # is it a wrapped header?
            if line[0] in (0x09, 0x20):
                if not len(self.headers):
                    raise MessagingError('Not a valid RFC2822 message')
                # attach it to the previous header
                self.headers[-1] += '\r\n' + sline
                continue
            if ':' not in sline:
                raise MessagingError('Not a valid RFC2822 header: %s' % sline)
            self.headers.append(sline)

        if not len(self.headers):
            raise MessagingError('Not a valid RFC2822 message')

    def get_header(self, name: str) -> List[str]:
        """Return the values of all headers called name, in order."""
        lname = name.lower()
        values = list()
        for line in self.headers:
            if _hname(line) == lname:
                values.append(line.split(':', 1)[1].strip())
        return values

    def set_header(self, name: str, value: str) -> None:
        """Replace the first header called name, dropping any others.

        The header is appended if it is not present yet.
        """
        lname = name.lower()
        newline = '%s: %s' % (name, value)
        found = False
        for line in list(self.headers):
            if _hname(line) != lname:
                continue
            if not found:
                self.headers[self.headers.index(line)] = newline
                found = True
            else:
                self.headers.remove(line)
        if not found:
            self.headers.append(newline)
        self.saved = False

    def add_header(self, name: str, value: str) -> None:
        self.headers.append('%s: %s' % (name, value))
        self.saved = False

    def remove_header(self, name: str) -> None:
        lname = name.lower()
        self.headers = [line for line in self.headers if _hname(line) != lname]
        self.saved = False

    def get_all_header_lines(self) -> List[str]:
        return list(self.headers)

    def get_non_matching_header_lines(self, ignore: Optional[Iterable[str]] = None) -> List[str]:
        """Return header lines whose names are not in ignore.

        Matching is case-insensitive. Order and duplicates are preserved.
        """
        if not ignore:
            return list(self.headers)
        lignore = set(x.lower() for x in ignore)
        return [line for line in self.headers if _hname(line) not in lignore]

    def set_allow_8bitmime(self, allow: bool) -> None:
        if allow == self._allow_8bit:
            return
        self._allow_8bit = allow
        if self._data is not None:
            # pending content needs its transfer encoding picked again
            self.saved = False

    def get_allow_8bitmime(self) -> bool:
        return self._allow_8bit

    def set_content(self, data: Union[str, bytes], encoding: Optional[str] = None) -> None:
        """Replace the message body with new content.

        The content is encoded when the message is written out.

        Args:
            data: New body. Text is written as utf-8 with CRLF line endings.
            encoding: Content-Transfer-Encoding to use. If None, one is
                chosen in save_changes().

        Raises:
            MessagingError: If the encoding is not known.
        """
        if encoding is not None and encoding.lower() not in ENCODINGS:
            raise MessagingError('Unknown Content-Transfer-Encoding: %s' % encoding)
        self._data = data
        self._encoding = encoding.lower() if encoding else None
        self.content = None
        self.content_stream = None
        self._content_offset = None
        self._stream_read = False
        self.modified = True
        self.saved = False

    def _get_data_bytes(self) -> bytes:
        if self._data is None:
            raise MessagingError('Message has no pending content')
        if isinstance(self._data, str):
            text = re.sub(r'\r?\n', '\r\n', self._data)
            return text.encode('utf-8')
        return self._data

    def save_changes(self) -> None:
        """Bring headers in line with the current content.

        Picks a transfer encoding for pending content and updates the
        MIME-Version, Content-Type and Content-Transfer-Encoding headers.

        Raises:
            MessagingError: If pending content cannot be described.
        """
        if self._data is not None:
            istext = isinstance(self._data, str)
            data = self._get_data_bytes()
            encoding = self._encoding
            if encoding == '7bit' and not _is_7bit_clean(data):
                logger.debug('Content is not 7-bit clean, not using 7bit')
                encoding = None
            elif encoding in ('8bit', 'binary') and not self._allow_8bit and not _is_7bit_clean(data):
                logger.debug('8-bit transport not allowed, not using %s', encoding)
                encoding = None
            if encoding is None:
                encoding = choose_encoding(data, istext=istext, allow_8bit=self._allow_8bit)
            if not self.get_header('mime-version'):
                self.add_header('MIME-Version', '1.0')
            if not self.get_header('content-type'):
                if not istext:
                    self.add_header('Content-Type', 'application/octet-stream')
                elif _is_7bit_clean(data):
                    self.add_header('Content-Type', 'text/plain; charset="us-ascii"')
                else:
                    self.add_header('Content-Type', 'text/plain; charset="utf-8"')
            self.set_header('Content-Transfer-Encoding', encoding)
            logger.debug('Content-Transfer-Encoding: %s', encoding)
        self.saved = True

    def get_encoding(self) -> str:
        """Return the declared Content-Transfer-Encoding, lower-cased."""
        values = self.get_header('content-transfer-encoding')
        if not values or not values[0]:
            return '7bit'
        return values[0].lower()

    def write_content(self, fh: Union[BinaryIO, _PassthroughEncoder]) -> None:
        """Write the pending, not yet encoded, content to fh."""
        fh.write(self._get_data_bytes())

    def get_content_stream(self) -> BinaryIO:
        """Return a readable stream of the raw (encoded) body.

        Streams from from_file() are rewound to the start of the body on
        every call.

        Raises:
            MessagingError: If the message has no body at all, or
                its stream cannot be rewound for a second read.
        """
        if self.content_stream is not None:
            if self._content_offset is not None:
                self.content_stream.seek(self._content_offset)
            elif self._stream_read:
                raise MessagingError('Content stream is not seekable and was already read')
            self._stream_read = True
            return self.content_stream
        if self.content is not None:
            return BytesIO(self.content)
        raise MessagingError('No content available')

    def as_bytes(self) -> bytes:
        """Return the message as unsigned bytes with CRLF header endings."""
        body = freeze_body(self)
        with BytesIO() as fh:
            for line in self.headers:
                writeln(fh, line)
            writeln(fh)
            fh.write(body)
            return fh.getvalue()


class FrozenMessage:
    """Read-only view of a message at the moment it is signed.

    Pairs the header lines with the body bytes that will be written out,
    so the signer works on exactly what is transmitted.

    Attributes:
        headers: Header lines, unterminated.
    """

    headers: List[str]
    _encoded_body: bytes

    def __init__(self, headers: List[str], encoded_body: bytes):
        self.headers = list(headers)
        self._encoded_body = encoded_body

    def get_encoded_body(self) -> bytes:
        return self._encoded_body

    def get_header(self, name: str) -> List[str]:
        lname = name.lower()
        return [line.split(':', 1)[1].strip() for line in self.headers if _hname(line) == lname]

    def as_bytes(self) -> bytes:
        """Return headers, a blank line and the encoded body, CRLF-terminated."""
        with BytesIO() as fh:
            for line in self.headers:
                writeln(fh, line)
            writeln(fh)
            fh.write(self._encoded_body)
            return fh.getvalue()


def freeze_body(msg: Any) -> bytes:
    """Resolve the message body into the bytes that will be transmitted.

    The message is asked to save pending changes first, so that headers
    describing the transfer encoding match the bytes produced here.

    Args:
        msg: A MailMessage, or anything offering the same body accessors.

    Returns:
        The encoded body.

    Raises:
        MessagingError: If the message cannot be prepared.
        OSError: If reading the content stream fails.
    """
    if not msg.saved:
        msg.save_changes()

    with BytesIO() as bodybuf:
        if msg.modified:
            # write the live content through the transfer encoding
            logger.debug('Encoding modified body as %s', msg.get_encoding())
            encoder = get_encoder(bodybuf, msg.get_encoding())
            msg.write_content(encoder)
            encoder.flush()
            encoder.close()
        elif msg.content is None:
            logger.debug('Copying body from content stream')
            stream = msg.get_content_stream()
            while True:
                chunk = stream.read(COPYBUFSIZE)
                if not chunk:
                    break
                bodybuf.write(chunk)
        else:
            logger.debug('Using materialized body content')
            bodybuf.write(msg.content)

        body = bodybuf.getvalue()

    logger.debug('Frozen body is %d bytes', len(body))
    return body


def write_signed(msg: Any, fh: BinaryIO, signer: Any, ignore: Optional[Iterable[str]] = None) -> FrozenMessage:
    """Sign a message and write it to fh with the signature header first.

    The signer is called exactly once with a FrozenMessage holding the
    body as it is about to be written. 8-bit transport is switched
    off on msg first. Nothing is written if freezing
    the body or signing fails. fh is flushed, not closed.

    Args:
        msg: A MailMessage, or anything offering the same accessors.
        fh: Writable binary stream.
        signer: Object with a sign(FrozenMessage) -> str method returning
            a complete header line, without the trailing CRLF.
        ignore: Header names to leave out of the output.

    Returns:
        The FrozenMessage that was signed.

    Raises:
        MessagingError: If the message cannot be prepared.
        SigningError: If the signer fails.
        OSError: If reading or writing fails.
    """
    # never send 8-bit transfer encodings
    msg.set_allow_8bitmime(False)
    body = freeze_body(msg)
    frozen = FrozenMessage(msg.get_all_header_lines(), body)

    logger.debug('Signing message with %s', type(signer).__name__)
    sigline = signer.sign(frozen)

    writeln(fh, sigline)
    for line in msg.get_non_matching_header_lines(ignore):
        writeln(fh, line)
    writeln(fh)
    fh.flush()

    fh.write(frozen.get_encoded_body())
    fh.flush()
    return frozen


class SignedMessage:
    """A message that is DKIM-signed every time it is written out.

    Wraps a message rather than extending it. 8-bit transport is switched
    off on the wrapped message and cannot be switched back on through this
    object, since relays may re-encode 8-bit bodies and break the body hash.

    Args:
        message: The message to sign.
        signer: Object with a sign(FrozenMessage) -> str method.
    """

    def __init__(self, message: Any, signer: Any):
        self.message = message
        self.signer = signer
        self.message.set_allow_8bitmime(False)

    def set_allow_8bitmime(self, allow: bool) -> None:
        # always keep 7-bit safe transfer encodings
        self.message.set_allow_8bitmime(False)

    def get_allow_8bitmime(self) -> bool:
        return False

    def write_to(self, fh: BinaryIO, ignore: Optional[Iterable[str]] = None) -> FrozenMessage:
        """Freeze, sign and write the message. Signs afresh on every call."""
        return write_signed(self.message, fh, self.signer, ignore=ignore)

    def as_bytes(self, ignore: Optional[Iterable[str]] = None) -> bytes:
        with BytesIO() as fh:
            self.write_to(fh, ignore=ignore)
            return fh.getvalue()


class DkimSigner:
    """Computes DKIM-Signature headers using dkimpy.

    Args:
        domain: Signing domain (d=).
        selector: Key selector (s=).
        privkey: Private key data. PEM for rsa-sha256, base64-encoded
            32-byte seed for ed25519-sha256.
        algorithm: 'rsa-sha256' or 'ed25519-sha256'.
        canonicalization: 'header/body' canonicalization, e.g.
            'relaxed/simple'. A single value applies to headers only.
        identity: Optional signing identity (i=), must be in domain.
        signheaders: Header names to sign. If None, dkimpy decides.

    Raises:
        ConfigurationError: If algorithm or canonicalization are not valid.
    """

    def __init__(self, domain: str, selector: str, privkey: bytes,
                 algorithm: str = 'rsa-sha256',
                 canonicalization: str = 'relaxed/simple',
                 identity: Optional[str] = None,
                 signheaders: Optional[List[str]] = None):
        if algorithm not in ALGORITHMS:
            raise ConfigurationError('Unsupported algorithm: %s' % algorithm)
        chunks = canonicalization.lower().split('/', 1)
        if len(chunks) < 2:
            # RFC 6376: a missing body algorithm means simple
            chunks.append('simple')
        for chunk in chunks:
            if chunk not in CANONICALIZATIONS:
                raise ConfigurationError('Unsupported canonicalization: %s' % canonicalization)
        self.domain = domain
        self.selector = selector
        self.privkey = privkey
        self.algorithm = algorithm
        self.canonicalize = (chunks[0].encode(), chunks[1].encode())
        self.identity = identity
        self.signheaders = signheaders

    @classmethod
    def from_config(cls, config: GitConfigType) -> 'DkimSigner':
        """Create a signer from dkimwrite configuration.

        Raises:
            ConfigurationError: If domain or privkey are missing, or the
                key file cannot be read.
        """
        domain = config.get('domain')
        if not isinstance(domain, str) or not domain:
            raise ConfigurationError('dkimwrite.domain is not set')
        keyfile = config.get('privkey')
        if not isinstance(keyfile, str) or not keyfile:
            raise ConfigurationError('dkimwrite.privkey is not set')
        keypath = os.path.expanduser(os.path.expandvars(keyfile))
        try:
            with open(keypath, 'rb') as fh:
                privkey = fh.read().strip()
        except OSError as ex:
            raise ConfigurationError('Unable to read private key %s' % keypath, errors=[str(ex)])

        selector = config.get('selector', 'default')
        algorithm = config.get('algorithm', 'rsa-sha256')
        canonicalization = config.get('canonicalization', 'relaxed/simple')
        identity = config.get('identity')
        for key, value in (('selector', selector), ('algorithm', algorithm),
                           ('canonicalization', canonicalization), ('identity', identity)):
            if isinstance(value, list):
                raise ConfigurationError('dkimwrite.%s must be set only once' % key)
        signheaders = config.get('signheader')
        if isinstance(signheaders, str):
            signheaders = [signheaders]

        logger.info('N: Using %s key: %s', algorithm, keypath)
        return cls(domain, str(selector), privkey, algorithm=str(algorithm),
                   canonicalization=str(canonicalization),
                   identity=identity if isinstance(identity, str) else None,
                   signheaders=signheaders)

    def _check_ed25519_key(self) -> None:
        global KEYCACHE
        if self.privkey in KEYCACHE:
            return
        try:
            from nacl.signing import SigningKey
            from nacl.encoding import Base64Encoder
            from nacl.exceptions import CryptoError
        except ModuleNotFoundError:
            raise RuntimeError('This operation requires PyNaCl libraries')

        try:
            sk = SigningKey(self.privkey, encoder=Base64Encoder)
        except (CryptoError, binascii.Error, TypeError, ValueError) as ex:
            raise SigningError('Invalid ed25519 private key', errors=[str(ex)])
        KEYCACHE[self.privkey] = base64.b64encode(sk.verify_key.encode())
        logger.debug('ed25519 public key: %s', KEYCACHE[self.privkey].decode())

    def sign(self, frozen: FrozenMessage) -> str:
        """Return a complete DKIM-Signature header line for frozen.

        Raises:
            SigningError: If required headers are missing or dkimpy fails.
        """
        import dkim

        present = set(_hname(line) for line in frozen.headers)
        missing = [x for x in REQ_HDRS if x not in present]
        if missing:
            raise SigningError('The following required headers not present: %s' % ', '.join(missing))

        if self.algorithm == 'ed25519-sha256':
            self._check_ed25519_key()

        include_headers = None
        if self.signheaders:
            include_headers = [x.encode() for x in self.signheaders]
        identity = self.identity.encode() if self.identity else None

        try:
            sig = dkim.sign(frozen.as_bytes(), self.selector.encode(), self.domain.encode(), self.privkey,
                            identity=identity, canonicalize=self.canonicalize,
                            signature_algorithm=self.algorithm.encode(),
                            include_headers=include_headers)
        except dkim.DKIMException as ex:
            raise SigningError('DKIM signing failed', errors=[str(ex)])

        if not sig:
            raise SigningError('DKIM signing returned no signature')
        return sig.rstrip(b'\r\n').decode('ascii')


def _run_command(cmdargs: List[str],
                 stdin: Optional[bytes] = None,
                 env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    logger.debug('Running %s', ' '.join(cmdargs))
    cp = subprocess.run(cmdargs, input=stdin, env=env, capture_output=True, text=False)
    logger.debug('Completed %s', repr(cp))
    return cp.returncode, cp.stdout, cp.stderr


def git_run_command(gitdir: Optional[str],
                    args: List[str],
                    stdin: Optional[bytes] = None,
                    env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    if gitdir:
        args = ['git', '--git-dir', gitdir, '--no-pager'] + args
    else:
        args = ['git', '--no-pager'] + args
    return _run_command(args, stdin=stdin, env=env)


def get_config_from_git(regexp: str,
                        section: Optional[str] = None,
                        defaults: Optional[GitConfigType] = None,
                        multivals: Optional[List[str]] = None) -> GitConfigType:
    if multivals is None:
        multivals = list()

    args = ['config', '-z', '--get-regexp', regexp]
    _, bout, _ = git_run_command(None, args)
    if defaults is None:
        defaults = dict()

    if not len(bout):
        return defaults

    gitconfig = defaults
    out = bout.decode()

    for line in out.split('\x00'):
        if not line:
            continue
        key, value = line.split('\n', 1)
        try:
            chunks = key.split('.')
            # Drop the starting part
            chunks.pop(0)
            cfgkey = chunks.pop(-1).lower()
            if len(chunks):
                if not section:
                    # Ignore it
                    continue
                # We're in a subsection
                sname = '.'.join(chunks)
                if sname != section:
                    # Not our section
                    continue
            elif section:
                # We want config from a subsection specifically
                continue

            if cfgkey in multivals:
                existing = gitconfig.get(cfgkey)
                if isinstance(existing, list):
                    existing.append(value)
                elif isinstance(existing, str):
                    gitconfig[cfgkey] = [existing, value]
                else:
                    gitconfig[cfgkey] = [value]
            else:
                gitconfig[cfgkey] = value
        except (ValueError, IndexError):
            logger.debug('Ignoring git config entry %s', line)

    return gitconfig


def get_main_config(section: Optional[str] = None) -> GitConfigType:
    """Load dkimwrite configuration from git config.

    Args:
        section: Optional subsection name, as in [dkimwrite "name"].
            If None, loads base dkimwrite.* settings.

    Returns:
        Configuration dictionary. Results are cached per section.
    """
    global CONFIGCACHE
    if section:
        csection = section
    else:
        csection = 'default'
    if csection in CONFIGCACHE:
        return CONFIGCACHE[csection]
    config = get_config_from_git(r'dkimwrite\..*', section=section,
                                 defaults={'selector': 'default', 'algorithm': 'rsa-sha256',
                                           'canonicalization': 'relaxed/simple'},
                                 multivals=['signheader', 'exclude'])
    logger.debug('config: %s', config)
    CONFIGCACHE[csection] = config
    return config


def rfc2822_sign(message: bytes, config: Optional[GitConfigType] = None,
                 ignore: Optional[Iterable[str]] = None) -> bytes:
    """Sign an RFC2822 message and return it with the DKIM-Signature first.

    Args:
        message: Raw RFC2822 message bytes.
        config: dkimwrite configuration. Loaded from git config if None.
        ignore: Header names to leave out. Defaults to the configured
            exclude list.

    Returns:
        The signed message bytes.
    """
    if config is None:
        config = get_main_config()
    if ignore is None:
        excl = config.get('exclude', list())
        ignore = [excl] if isinstance(excl, str) else excl
    signer = DkimSigner.from_config(config)
    sm = SignedMessage(MailMessage(message), signer)
    signed = sm.as_bytes(ignore=ignore)
    logger.debug('--- SIGNED MESSAGE STARTS ---')
    logger.debug(signed.decode('latin-1'))
    return signed


def _load_messages(cmdargs: argparse.Namespace) -> Dict[str, bytes]:
    if len(cmdargs.msgfile):
        # Load all message from the files passed to make sure they all parse correctly
        messages = dict()
        for msgfile in cmdargs.msgfile:
            with open(msgfile, 'rb') as fh:
                messages[msgfile] = fh.read()
    elif not sys.stdin.isatty():
        messages = {'-': sys.stdin.buffer.read()}
    else:
        logger.critical('E: Pipe a message to sign or pass filenames with individual messages')
        raise RuntimeError('Nothing to do')

    return messages


def cmd_sign(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    try:
        messages = _load_messages(cmdargs)
    except IOError as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)

    ignore = None
    if cmdargs.exclude:
        ignore = cmdargs.exclude

    for fn, msgdata in messages.items():
        try:
            signed = rfc2822_sign(msgdata, config, ignore=ignore)
            if fn == '-' or not cmdargs.inplace:
                sys.stdout.buffer.write(signed)
                sys.stdout.buffer.flush()
            else:
                with open(fn, 'wb') as fh:
                    fh.write(signed)

                logger.critical('SIGN | %s', os.path.basename(fn))

        except ConfigurationError as ex:
            logger.critical('E: %s', ex)
            sys.exit(1)

        except (SigningError, MessagingError) as ex:
            logger.critical('E: %s: %s', fn, ex)
            sys.exit(1)

        except (OSError, RuntimeError) as ex:
            logger.critical('E: %s: %s', fn, ex)
            sys.exit(1)


def command() -> None:
    parser = argparse.ArgumentParser(
        prog='dkimwrite',
        description='DKIM-sign RFC2822 messages, writing the signature header first',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Be a bit more verbose')
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Show debugging output')
    parser.add_argument('-s', '--section', dest='section', default=None,
                        help='Use config section [dkimwrite "sectionname"]')
    parser.add_argument('--version', action='version', version=__VERSION__)

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    sp_sign = subparsers.add_parser('sign', help='DKIM-sign an RFC2822 message')
    sp_sign.add_argument('-x', '--exclude', action='append', default=None,
                         help='Header to leave out of the output (may be repeated)')
    sp_sign.add_argument('-i', '--in-place', dest='inplace', action='store_true', default=False,
                         help='Overwrite message files instead of writing to stdout')
    sp_sign.add_argument('msgfile', nargs='*', help='RFC2822 message files to sign')
    sp_sign.set_defaults(func=cmd_sign)

    _args = parser.parse_args()

    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if _args.verbose:
        ch.setLevel(logging.INFO)
    elif _args.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.CRITICAL)

    logger.addHandler(ch)

    if 'func' not in _args:
        parser.print_help()
        sys.exit(1)

    config = get_main_config(section=_args.section)

    try:
        _args.func(_args, config)
    except RuntimeError:
        sys.exit(1)


if __name__ == '__main__':
    command()
