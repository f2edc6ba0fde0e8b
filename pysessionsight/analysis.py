import concurrent.futures
import logging

from pysessionsight import __version__
from pysessionsight import registry
from pysessionsight.browsers.chrome import Chrome
from pysessionsight.browsers.safari import Safari

log = logging.getLogger(__name__)


class ExtractionSession(object):
    """Finds candidate session tokens across every registered browser.

    For each browser the IndexedDB scan runs first, since it yields the JWT itself along with
    its expiry; only if it finds nothing do we fall back to the cookie store. Results are
    concatenated in registry order. Tokens found in more than one browser are reported once
    per browser; picking one is up to the caller.
    """

    browser_classes = {'pbkdf2': Chrome, 'binary': Safari}

    def __init__(self, target=None, secrets=None, reader=None, browsers=None, timezone=None,
                 max_workers=1, timeout=None, max_segment_bytes=None):
        self.target = target
        self.secrets = secrets
        self.reader = reader
        self.browsers = browsers
        self.timezone = timezone
        self.max_workers = max_workers
        self.timeout = timeout
        self.max_segment_bytes = max_segment_bytes
        self.version = __version__

        if self.target is None:
            self.target = registry.AKIFLOW

        if self.browsers is None:
            self.browsers = registry.all_browsers()

    def find_browser(self, browser_id):
        for descriptor in self.browsers:
            if descriptor.id == browser_id:
                return descriptor
        return None

    def get_browser(self, descriptor):
        browser_class = self.browser_classes.get(descriptor.decryption_method)
        if browser_class is None:
            log.warning(f'No parser for decryption method "{descriptor.decryption_method}" ({descriptor.id})')
            return None

        return browser_class(
            descriptor, target=self.target, secrets=self.secrets, reader=self.reader, timezone=self.timezone,
            max_segment_bytes=self.max_segment_bytes)

    def scan_browser(self, descriptor):
        log.info(f'Scanning {descriptor.display_name}')

        browser = self.get_browser(descriptor)
        if browser is None:
            return []

        tokens = browser.get_indexeddb()
        if tokens:
            log.info(f' - Found {len(tokens)} tokens in IndexedDB; not reading cookies')
            return tokens

        return browser.get_cookies()

    def scan_one(self, browser_id):
        descriptor = self.find_browser(browser_id)
        if descriptor is None:
            log.warning(f'Unknown browser "{browser_id}"')
            return []
        return self.scan_browser(descriptor)

    def scan_all(self):
        if self.max_workers and self.max_workers > 1:
            results = self._scan_concurrently()
        else:
            results = []
            for descriptor in self.browsers:
                results.extend(self.scan_browser(descriptor))

        log.info(f'Found {len(results)} candidate tokens in {len(self.browsers)} browsers')
        return results

    def _scan_concurrently(self):
        results = []
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = [executor.submit(self.scan_browser, descriptor) for descriptor in self.browsers]

            # One deadline for the whole scan
            _, not_done = concurrent.futures.wait(futures, timeout=self.timeout)

            # Collect in registry order, not completion order
            for descriptor, future in zip(self.browsers, futures):
                if future in not_done:
                    future.cancel()
                    log.warning(f'Timed out after {self.timeout}s scanning {descriptor.display_name}')
                    continue
                results.extend(future.result())
        finally:
            # A scan that is already running cannot be interrupted; its thread finishes in the
            # background and its result is discarded.
            executor.shutdown(wait=False)

        return results
