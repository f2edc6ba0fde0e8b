"""Browsers we know how to pull a session token from, and the service whose token we want.

Paths are the macOS profile locations. Chrome-family browsers (Chrome, Arc, Brave, Edge) share
Chromium's cookie encryption: an AES key derived with PBKDF2 (salt "saltysalt", 1003 iterations)
from a password held in the login Keychain. Safari keeps its cookies in a binary
Cookies.binarycookies container instead of SQLite.
"""
import collections
import logging
import os
import re

from pysessionsight.utils import LocalFileReader

log = logging.getLogger(__name__)

BrowserDescriptor = collections.namedtuple('BrowserDescriptor', [
    'id', 'display_name', 'cookie_path', 'indexeddb_path', 'decryption_method',
    'keychain_service', 'keychain_account'])

TargetService = collections.namedtuple('TargetService', [
    'domain', 'cookie_prefix', 'indexeddb_folder', 'token_pattern'])

AKIFLOW = TargetService(
    domain='akiflow.com',
    cookie_prefix='remember_web_',
    indexeddb_folder='https_web.akiflow.com_0.indexeddb.leveldb',
    # RS256 JWTs; the header segment is always {"typ":"JWT","alg":"RS256"}
    token_pattern=re.compile(r'eyJ0eXAiOiJKV1QiLCJhbGciOiJSUzI1NiJ9\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+'))

_app_support = os.path.expanduser('~/Library/Application Support')

BROWSER_PATHS = {
    'chrome': os.path.join(_app_support, 'Google', 'Chrome', 'Default', 'Cookies'),
    'arc': os.path.join(_app_support, 'Arc', 'User Data', 'Default', 'Cookies'),
    'brave': os.path.join(_app_support, 'BraveSoftware', 'Brave-Browser', 'Default', 'Cookies'),
    'edge': os.path.join(_app_support, 'Microsoft Edge', 'Default', 'Cookies'),
    'safari': os.path.expanduser(os.path.join('~', 'Library', 'Cookies', 'Cookies.binarycookies')),
}

INDEXEDDB_PATHS = {
    'chrome': os.path.join(_app_support, 'Google', 'Chrome', 'Default', 'IndexedDB'),
    'arc': os.path.join(_app_support, 'Arc', 'User Data', 'Default', 'IndexedDB'),
    'brave': os.path.join(_app_support, 'BraveSoftware', 'Brave-Browser', 'Default', 'IndexedDB'),
    'edge': os.path.join(_app_support, 'Microsoft Edge', 'Default', 'IndexedDB'),
    'safari': None,
}

BROWSERS = collections.OrderedDict((browser.id, browser) for browser in [
    BrowserDescriptor('chrome', 'Google Chrome', BROWSER_PATHS['chrome'], INDEXEDDB_PATHS['chrome'], 'pbkdf2',
                      'Chrome Safe Storage', 'Chrome'),
    BrowserDescriptor('arc', 'Arc Browser', BROWSER_PATHS['arc'], INDEXEDDB_PATHS['arc'], 'pbkdf2',
                      'Arc Safe Storage', 'Arc'),
    BrowserDescriptor('brave', 'Brave Browser', BROWSER_PATHS['brave'], INDEXEDDB_PATHS['brave'], 'pbkdf2',
                      'Brave Safe Storage', 'Brave'),
    BrowserDescriptor('edge', 'Microsoft Edge', BROWSER_PATHS['edge'], INDEXEDDB_PATHS['edge'], 'pbkdf2',
                      'Microsoft Edge Safe Storage', 'Microsoft Edge'),
    BrowserDescriptor('safari', 'Safari', BROWSER_PATHS['safari'], INDEXEDDB_PATHS['safari'], 'binary',
                      None, None),
])


def describe(browser_id):
    return BROWSERS[browser_id]


def all_browsers():
    return list(BROWSERS.values())


def is_installed(browser_id, reader=None):
    """A browser counts as installed if its cookie store exists."""
    if reader is None:
        reader = LocalFileReader()
    return reader.exists(describe(browser_id).cookie_path)


def installed_browsers(reader=None):
    installed = [browser.id for browser in all_browsers() if is_installed(browser.id, reader)]
    log.debug(f'Installed browsers: {installed}')
    return installed
