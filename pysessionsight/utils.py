import base64
import datetime
import json
import logging
import os
import pathlib
import shutil
import sqlite3
import struct
import tempfile
from contextlib import contextmanager

import pytz

log = logging.getLogger(__name__)

# Seconds between the Unix epoch and the Cocoa (Mac absolute time) epoch of 2001-01-01
APPLE_EPOCH_OFFSET = 978307200

# Seconds between 1601-01-01 (WebKit epoch) and the Unix epoch
WEBKIT_EPOCH_OFFSET = 11644473600


class MalformedRecordError(ValueError):
    """Raised when bytes read from a browser artifact don't match the expected layout."""


def dict_factory(cursor, row):
    d = {}
    for idx, col in enumerate(cursor.description):
        d[col[0]] = row[idx]
    return d


def text_factory(row_data):
    try:
        return row_data.decode('utf-8')
    except UnicodeDecodeError:
        return row_data


class LocalFileReader(object):
    """Read-only access to the local filesystem.

    Browsers are handed one of these rather than touching ``os`` directly, so
    tests can substitute a fake or count calls.
    """

    def exists(self, path):
        return os.path.exists(path)

    def is_dir(self, path):
        return os.path.isdir(path)

    def is_file(self, path):
        return os.path.isfile(path)

    def list_dir(self, path):
        return sorted(os.listdir(path))

    def size(self, path):
        return os.path.getsize(path)

    def read_bytes(self, path):
        with open(path, 'rb') as input_file:
            return input_file.read()

    def copy(self, source_path, destination_path):
        shutil.copyfile(source_path, destination_path)


@contextmanager
def sqlite_snapshot(database_path, reader=None, prefix='snapshot'):
    """Copy a SQLite database to a unique temp file and yield a read-only connection to the copy.

    Browsers keep a lock on their live databases, so we never open them in place. The copy is
    removed when the block exits, whether or not it raised.
    """
    if reader is None:
        reader = LocalFileReader()

    handle, snapshot_path = tempfile.mkstemp(prefix=f'{prefix}_', suffix='.db')
    os.close(handle)
    conn = None
    try:
        reader.copy(database_path, snapshot_path)
        log.debug(f' - Copied {database_path} to {snapshot_path}')

        conn = sqlite3.connect(f'{pathlib.Path(snapshot_path).as_uri()}?mode=ro', uri=True)
        conn.row_factory = dict_factory
        conn.text_factory = text_factory
        yield conn
    finally:
        if conn is not None:
            conn.close()
        try:
            os.remove(snapshot_path)
        except FileNotFoundError:
            pass


def to_datetime(timestamp, timezone=None):
    """Convert a WebKit or Unix epoch timestamp to an aware datetime.

    Zero and None mean "no timestamp" (session cookies, tokens without an exp claim)
    and return None, as does anything that can't be converted.
    """

    if timestamp is None or isinstance(timestamp, bool):
        return None

    if isinstance(timestamp, datetime.datetime):
        new_timestamp = timestamp if timestamp.tzinfo else pytz.utc.localize(timestamp)

    else:
        try:
            timestamp = float(timestamp)
        except (TypeError, ValueError) as e:
            log.warning(f'Exception parsing {timestamp} to datetime: {e}')
            return None

        if timestamp == 0:
            return None

        try:
            # Webkit microseconds (17 digits); Chrome cookie expiry dates
            if timestamp > 12000000000000000:
                new_timestamp = datetime.datetime.fromtimestamp(
                    (timestamp / 1000000) - WEBKIT_EPOCH_OFFSET, pytz.utc)

            # Epoch milliseconds (13 digits)
            elif 2500000000000 > timestamp > 1280000000000:
                new_timestamp = datetime.datetime.fromtimestamp(timestamp / 1000, pytz.utc)

            # Epoch seconds; JWT exp claims
            else:
                new_timestamp = datetime.datetime.fromtimestamp(timestamp, pytz.utc)

        except (OverflowError, OSError, ValueError) as e:
            log.warning(f'Exception parsing {timestamp} to datetime: {e}; '
                        f'common issue is value is too big for the OS to convert it')
            return None

    if timezone is not None:
        return new_timestamp.astimezone(timezone)
    return new_timestamp


def apple_to_datetime(timestamp, timezone=None):
    """Convert seconds since 2001-01-01 UTC (Cocoa absolute time) to an aware datetime."""
    if not timestamp or timestamp <= 0:
        return None
    try:
        return to_datetime(datetime.datetime.fromtimestamp(timestamp + APPLE_EPOCH_OFFSET, pytz.utc), timezone)
    except (OverflowError, OSError, ValueError) as e:
        log.debug(f'Exception parsing Apple timestamp {timestamp}: {e}')
        return None


def is_expired(expires_at, now=None):
    if expires_at is None:
        return False
    if now is None:
        now = datetime.datetime.now(pytz.utc)
    return expires_at < now


def b64url_decode(segment):
    if isinstance(segment, str):
        segment = segment.encode('ascii')
    return base64.urlsafe_b64decode(segment + b'=' * (-len(segment) % 4))


def jwt_claims(token):
    """Return the decoded claims (middle segment) of a JWT, or None if it doesn't decode to a JSON object."""
    parts = token.split('.')
    if len(parts) != 3 or not parts[1]:
        return None

    try:
        claims = json.loads(b64url_decode(parts[1]))
    except (ValueError, UnicodeError) as e:
        log.debug(f' - Could not decode JWT claims: {e}')
        return None

    if not isinstance(claims, dict):
        return None
    return claims


def jwt_expiry(token, timezone=None):
    claims = jwt_claims(token)
    if not claims:
        return None

    exp = claims.get('exp')
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return None
    return to_datetime(exp, timezone)


class BinaryReader(object):
    """Read-only, bounds-checked window over a byte buffer.

    Offsets are relative to the start of the window. Every read checks that it
    falls inside the window and raises MalformedRecordError if it doesn't, so
    truncated or hostile files can't send a parser outside the data it was given.
    """

    def __init__(self, data, start=0, end=None):
        self.data = data
        self.start = start
        self.end = len(data) if end is None else end

        if not 0 <= self.start <= self.end <= len(data):
            raise MalformedRecordError(f'Window {self.start}:{self.end} is outside a {len(data)} byte buffer')

    def __len__(self):
        return self.end - self.start

    def check(self, offset, size):
        if offset < 0 or size < 0 or offset + size > len(self):
            raise MalformedRecordError(
                f'Read of {size} bytes at offset {offset} is outside a {len(self)} byte window')

    def window(self, offset, size):
        self.check(offset, size)
        return BinaryReader(self.data, self.start + offset, self.start + offset + size)

    def read_bytes(self, offset, size):
        self.check(offset, size)
        return bytes(self.data[self.start + offset:self.start + offset + size])

    def _unpack(self, fmt, offset):
        self.check(offset, struct.calcsize(fmt))
        return struct.unpack_from(fmt, self.data, self.start + offset)[0]

    def read_u32_le(self, offset):
        return self._unpack('<I', offset)

    def read_u32_be(self, offset):
        return self._unpack('>I', offset)

    def read_f64_le(self, offset):
        return self._unpack('<d', offset)

    def read_cstring(self, offset):
        """Read a NUL-terminated UTF-8 string; the terminator must be inside the window."""
        self.check(offset, 1)
        terminator = self.data.find(b'\x00', self.start + offset, self.end)
        if terminator == -1:
            raise MalformedRecordError(f'Unterminated string at offset {offset}')

        try:
            return bytes(self.data[self.start + offset:terminator]).decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedRecordError(f'Invalid UTF-8 string at offset {offset}: {e}')
