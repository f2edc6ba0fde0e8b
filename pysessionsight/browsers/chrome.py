# -*- coding: utf-8 -*-
import hashlib
import logging
import os
import sqlite3

from Cryptodome.Cipher import AES
from Cryptodome.Protocol.KDF import PBKDF2
from Cryptodome.Util.Padding import unpad

from pysessionsight.browsers.webbrowser import WebBrowser
from pysessionsight import utils

log = logging.getLogger(__name__)

# Chromium's macOS cookie encryption; see components/os_crypt in the Chromium source
CHROME_SALT = b'saltysalt'
CHROME_ITERATIONS = 1003
CHROME_KEY_LENGTH = 16
CHROME_IV = b' ' * 16
ENCRYPTED_PREFIXES = (b'v10', b'v11')

# Cookies DB version 24+ prepends sha256(host_key) to the plaintext (https://crrev.com/c/5792044)
HOST_KEY_HASH_LENGTH = 32

COOKIE_QUERY = '''SELECT cookies.host_key, cookies.name, cookies.value, cookies.encrypted_value,
                      cookies.expires_utc
                  FROM cookies
                  WHERE cookies.host_key LIKE ? AND cookies.name LIKE ?'''


def derive_key(password):
    """Derive the 128-bit AES cookie key from a browser's Safe Storage password."""
    if isinstance(password, str):
        password = password.encode('utf8')
    return PBKDF2(password, CHROME_SALT, CHROME_KEY_LENGTH, CHROME_ITERATIONS)


def decrypt_cookie(encrypted_value, key, host_key=None):
    """Decryption based on work by Nathan Henrie and the Chromium source:
     - Mac: http://n8henrie.com/2014/05/decrypt-chrome-cookies-with-python/
     - Relevant Chromium source code: components/os_crypt/

    Returns the cookie value as text, or None if it can't be recovered.
    Values without a v10/v11 prefix were never encrypted and are returned as-is.
    """
    if not encrypted_value or len(encrypted_value) < 3:
        return None

    encrypted_value = bytes(encrypted_value)
    if encrypted_value[:3] not in ENCRYPTED_PREFIXES:
        try:
            return encrypted_value.decode('utf-8')
        except UnicodeDecodeError:
            return None

    if key is None:
        return None

    # Strip the version prefix; what's left is CBC ciphertext
    encrypted = encrypted_value[3:]
    if not encrypted or len(encrypted) % AES.block_size:
        return None

    cipher = AES.new(key, AES.MODE_CBC, iv=CHROME_IV)
    try:
        decrypted = unpad(cipher.decrypt(encrypted), AES.block_size)
    except ValueError:
        return None

    if host_key and len(decrypted) >= HOST_KEY_HASH_LENGTH and \
            decrypted[:HOST_KEY_HASH_LENGTH] == hashlib.sha256(host_key.encode('utf-8')).digest():
        decrypted = decrypted[HOST_KEY_HASH_LENGTH:]

    try:
        return decrypted.decode('utf-8')
    except UnicodeDecodeError:
        return None


class Chrome(WebBrowser):
    """Chromium-family browser: SQLite cookie store with Keychain-keyed AES cookie values."""

    def get_key(self):
        password = self.secrets.get_password(self.descriptor)
        if not password:
            log.info(f' - No Safe Storage password for {self.browser_name}; only unencrypted values are readable')
            return None
        return derive_key(password)

    def resolve_cookie_value(self, cookie, key):
        cookie_value = None

        if cookie.encrypted_value is not None and len(cookie.encrypted_value) > 0:
            host_key = cookie.host_key if isinstance(cookie.host_key, str) else None
            cookie_value = decrypt_cookie(cookie.encrypted_value, key, host_key)

        if not cookie_value and isinstance(cookie.value, str) and cookie.value:
            cookie_value = cookie.value

        return cookie_value

    def get_cookies(self):
        results = []
        cookie_path = self.descriptor.cookie_path
        database = os.path.basename(cookie_path)

        log.info(f'Cookie items from {database}:')

        if not self.reader.exists(cookie_path):
            log.info(f' - Failed; {database} does not exist in {os.path.dirname(cookie_path)}')
            return results

        key = self.get_key()

        with utils.sqlite_snapshot(cookie_path, reader=self.reader, prefix=f'{self.browser_id}_cookies') as conn:
            try:
                rows = conn.execute(
                    COOKIE_QUERY, (f'%{self.target.domain}%', f'{self.target.cookie_prefix}%')).fetchall()
            except sqlite3.DatabaseError as e:
                log.warning(f' - Could not query {cookie_path}: {e}')
                return results

        skipped = 0
        for row in rows:
            cookie = Chrome.CookieItem(
                row.get('host_key'), row.get('name'), row.get('value'), row.get('encrypted_value'),
                row.get('expires_utc'))

            # LIKE treats '_' in the prefix as a wildcard, so check again
            if not self.is_wanted_cookie(cookie.host_key, cookie.name):
                continue

            cookie_value = self.resolve_cookie_value(cookie, key)
            if not cookie_value:
                skipped += 1
                log.debug(f' - Could not recover value of {cookie.name} for {cookie.host_key}')
                continue

            new_token = self.make_token(cookie_value, cookie_path, utils.to_datetime(cookie.expires_utc, self.timezone))
            if new_token:
                results.append(new_token)

        if skipped:
            log.info(f' - Skipped {skipped} cookies that could not be decrypted')
        log.info(f' - Parsed {len(results)} items')
        return results
