import datetime
import logging
import os

import pytz

from pysessionsight import utils
from pysessionsight.keychain import KeychainSecretProvider
from pysessionsight.registry import AKIFLOW

log = logging.getLogger(__name__)

# LevelDB segment files: write-ahead logs and sorted tables
SEGMENT_EXTENSIONS = ('.log', '.ldb')

DEFAULT_MAX_SEGMENT_BYTES = 64 * 1024 * 1024


class WebBrowser(object):
    def __init__(self, descriptor, target=None, secrets=None, reader=None, timezone=None,
                 max_segment_bytes=None):
        self.descriptor = descriptor
        self.target = target
        self.secrets = secrets
        self.reader = reader
        self.timezone = timezone
        self.max_segment_bytes = max_segment_bytes

        if self.target is None:
            self.target = AKIFLOW

        if self.secrets is None:
            self.secrets = KeychainSecretProvider()

        if self.reader is None:
            self.reader = utils.LocalFileReader()

        if self.max_segment_bytes is None:
            self.max_segment_bytes = DEFAULT_MAX_SEGMENT_BYTES

    @property
    def browser_id(self):
        return self.descriptor.id

    @property
    def browser_name(self):
        return self.descriptor.display_name

    def get_cookies(self):
        raise NotImplementedError

    def is_wanted_cookie(self, domain, name):
        if not isinstance(domain, str) or not isinstance(name, str):
            return False
        return self.target.domain in domain and name.startswith(self.target.cookie_prefix)

    def make_token(self, token, source, expires_at=None, now=None):
        """Build an ExtractedToken, or return None for blank or expired values."""
        if not isinstance(token, str) or not token.strip():
            return None

        if utils.is_expired(expires_at, now):
            log.debug(f' - Dropping token from {source}; expired at {expires_at}')
            return None

        return WebBrowser.ExtractedToken(self.browser_id, token, source, expires_at)

    def get_indexeddb(self):
        """Scan the target origin's IndexedDB LevelDB files for signed tokens.

        The .log and .ldb files are read as raw bytes and searched with the target's token
        pattern rather than parsed as LevelDB. Values in .ldb files may be Snappy-compressed,
        but short JWTs are usually stored literally.
        """
        results = []

        if not self.descriptor.indexeddb_path:
            return results

        idb_path = os.path.join(self.descriptor.indexeddb_path, self.target.indexeddb_folder)
        log.info(f'IndexedDB items from {self.target.indexeddb_folder}:')

        if not self.reader.is_dir(idb_path):
            log.info(f' - Failed; {self.target.indexeddb_folder} does not exist in {self.descriptor.indexeddb_path}')
            return results

        idb_listing = self.reader.list_dir(idb_path)
        log.debug(f' - {len(idb_listing)} files in IndexedDB directory')

        now = datetime.datetime.now(pytz.utc)
        unique_tokens = {}
        scanned_files = 0

        for segment_file in idb_listing:
            if not segment_file.endswith(SEGMENT_EXTENSIONS):
                continue

            segment_path = os.path.join(idb_path, segment_file)
            if not self.reader.is_file(segment_path):
                continue

            try:
                segment_size = self.reader.size(segment_path)
                if segment_size > self.max_segment_bytes:
                    log.warning(f' - Skipping {segment_file}; {segment_size} bytes is over the '
                                f'{self.max_segment_bytes} byte limit')
                    continue

                # Invalid bytes become U+FFFD, which ends a match instead of joining neighbours
                content = self.reader.read_bytes(segment_path).decode('utf-8', errors='replace')

            except OSError as e:
                log.warning(f' - Error reading {segment_path}: {e}')
                continue

            scanned_files += 1
            for match in self.target.token_pattern.finditer(content):
                jwt = match.group(0)
                expires_at = utils.jwt_expiry(jwt, self.timezone)
                token = self.make_token(jwt, segment_path, expires_at, now=now)
                if token:
                    unique_tokens[jwt] = token

        results = sorted(unique_tokens.values(), key=WebBrowser.ExtractedToken.freshness, reverse=True)
        log.info(f' - Parsed {len(results)} items from {scanned_files} files')
        return results

    class CookieItem(object):
        def __init__(self, host_key, name, value=None, encrypted_value=None, expires_utc=None):
            self.host_key = host_key
            self.name = name
            self.value = value
            self.encrypted_value = encrypted_value
            self.expires_utc = expires_utc

    class ExtractedToken(object):
        def __init__(self, browser, token, source, expires_at=None):
            """

            :param browser: The registry id of the browser the token came from.
            :param token: The token value; never empty or whitespace-only.
            :param source: Path of the file the token was read from.
            :param expires_at: Timezone-aware expiry, if the token or its cookie carries one.
            """
            self.browser = browser
            self.token = token
            self.source = source
            self.expires_at = expires_at

        def freshness(self):
            """Sort key; tokens without an expiry rank below any token with one."""
            if self.expires_at is None:
                return float('-inf')
            return self.expires_at.timestamp()

        def __eq__(self, other):
            if not isinstance(other, WebBrowser.ExtractedToken):
                return NotImplemented
            return self.to_dict() == other.to_dict()

        def __hash__(self):
            return hash((self.browser, self.token, self.source))

        def __repr__(self):
            return f'ExtractedToken(browser={self.browser!r}, token={self.token[:12]!r}..., ' \
                   f'source={self.source!r}, expires_at={self.expires_at!r})'

        def to_dict(self):
            return {
                'browser': self.browser,
                'token': self.token,
                'source': self.source,
                'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            }
