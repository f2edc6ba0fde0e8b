"""Safari Cookies.binarycookies parser.

File layout (multi-byte values big-endian in the header, little-endian inside pages):

  0     4   magic 'cook'
  4     4   page count (BE)
  8   4*P   page sizes (BE)
  ...       pages, back to back

Each page:

  0     4   page marker, bytes 00 00 01 00
  4     4   cookie count (LE)
  8   4*C   cookie record offsets, relative to the page start (LE)

Each cookie record (offsets relative to the record start, all LE):

  0     4   record size
  8     4   flags (0x1 secure, 0x4 HttpOnly)
  16    4   domain offset
  20    4   name offset
  24    4   path offset
  28    4   value offset
  40    8   expiry, double seconds since 2001-01-01 UTC
  48    8   creation, double seconds since 2001-01-01 UTC

The four strings are NUL-terminated UTF-8.
"""
import collections
import datetime
import logging

import pytz

from pysessionsight.browsers.webbrowser import WebBrowser
from pysessionsight import utils
from pysessionsight.utils import BinaryReader, MalformedRecordError

log = logging.getLogger(__name__)

BINARY_COOKIES_MAGIC = b'cook'

# Safari writes the marker as 0x00000100 big-endian; also accept it packed little-endian
PAGE_MARKERS = (b'\x00\x00\x01\x00', b'\x00\x01\x00\x00')

COOKIE_HEADER_SIZE = 48

SafariCookie = collections.namedtuple('SafariCookie', ['domain', 'name', 'path', 'value', 'flags', 'expires_at'])


def parse_cookie(page, cookie_offset, timezone=None):
    cookie_size = page.read_u32_le(cookie_offset)
    if cookie_size < COOKIE_HEADER_SIZE:
        raise MalformedRecordError(f'Cookie record at {cookie_offset} is only {cookie_size} bytes')

    record = page.window(cookie_offset, cookie_size)

    return SafariCookie(
        domain=record.read_cstring(record.read_u32_le(16)),
        name=record.read_cstring(record.read_u32_le(20)),
        path=record.read_cstring(record.read_u32_le(24)),
        value=record.read_cstring(record.read_u32_le(28)),
        flags=record.read_u32_le(8),
        expires_at=utils.apple_to_datetime(record.read_f64_le(40), timezone))


def parse_page(page, timezone=None):
    if page.read_bytes(0, 4) not in PAGE_MARKERS:
        raise MalformedRecordError(f'Unexpected page marker {page.read_bytes(0, 4)!r}')

    cookie_count = page.read_u32_le(4)
    page.check(8, 4 * cookie_count)
    cookie_offsets = [page.read_u32_le(8 + 4 * i) for i in range(cookie_count)]

    cookies = []
    for cookie_offset in cookie_offsets:
        try:
            cookies.append(parse_cookie(page, cookie_offset, timezone))
        except MalformedRecordError as e:
            log.debug(f' - Skipping cookie record at offset {cookie_offset}: {e}')
    return cookies


def parse_binary_cookies(data, timezone=None):
    """Parse every cookie in a binarycookies file.

    Returns an empty list if the data isn't a binarycookies file. Pages and records
    that are truncated or point outside their bounds are skipped.
    """
    cookies = []
    reader = BinaryReader(data)

    try:
        if reader.read_bytes(0, 4) != BINARY_COOKIES_MAGIC:
            log.info(' - Failed; not a binarycookies file')
            return cookies

        page_count = reader.read_u32_be(4)
        reader.check(8, 4 * page_count)
        page_sizes = [reader.read_u32_be(8 + 4 * i) for i in range(page_count)]

    except MalformedRecordError as e:
        log.warning(f' - Truncated binarycookies header: {e}')
        return cookies

    page_start = 8 + 4 * page_count
    for page_index, page_size in enumerate(page_sizes):
        try:
            cookies.extend(parse_page(reader.window(page_start, page_size), timezone))
        except MalformedRecordError as e:
            log.debug(f' - Skipping page {page_index}: {e}')
        page_start += page_size

    return cookies


class Safari(WebBrowser):
    """Safari: cookies in a binarycookies container, no IndexedDB scan."""

    def parse(self, data):
        results = []
        now = datetime.datetime.now(pytz.utc)

        for cookie in parse_binary_cookies(data, self.timezone):
            if not self.is_wanted_cookie(cookie.domain, cookie.name):
                continue

            new_token = self.make_token(cookie.value, self.descriptor.cookie_path, cookie.expires_at, now=now)
            if new_token:
                results.append(new_token)

        return results

    def get_cookies(self):
        cookie_path = self.descriptor.cookie_path

        log.info(f'Cookie items from {cookie_path}:')

        if not self.reader.exists(cookie_path):
            log.info(f' - Failed; {cookie_path} does not exist')
            return []

        results = self.parse(self.reader.read_bytes(cookie_path))
        log.info(f' - Parsed {len(results)} items')
        return results
