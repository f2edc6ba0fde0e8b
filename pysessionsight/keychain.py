import logging
import sys

import keyring
import keyring.errors

log = logging.getLogger(__name__)


class KeychainSecretProvider(object):
    """Looks up a Chrome-family browser's "Safe Storage" password in the macOS login Keychain.

    Only macOS is supported. Windows (DPAPI) and Linux (libsecret/kwallet or the
    hardcoded "peanuts" password) wrap the cookie key differently, and on those
    platforms this provider reports that no password is available.

    Nothing is cached; every call queries the Keychain again.
    """

    def __init__(self, platform=None):
        self.platform = platform or sys.platform

    def get_password(self, browser):
        if not browser.keychain_service:
            return None

        if self.platform != 'darwin':
            log.info(f' - Keychain lookup for "{browser.keychain_service}" skipped; only supported on macOS')
            return None

        try:
            password = keyring.get_password(browser.keychain_service, browser.keychain_account)
        except keyring.errors.KeyringError as e:
            log.warning(f' - Could not query Keychain for "{browser.keychain_service}": {e}')
            return None

        if not password:
            log.info(f' - No "{browser.keychain_service}" entry in Keychain')
            return None

        return password
