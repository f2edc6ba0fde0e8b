import base64
import json
import os
import shutil
import sqlite3
import struct
import tempfile
import time
import unittest
from unittest import mock

from pysessionsight import registry
from pysessionsight.analysis import ExtractionSession
from pysessionsight.browsers.chrome import Chrome

JWT_HEADER = 'eyJ0eXAiOiJKV1QiLCJhbGciOiJSUzI1NiJ9'


class NoSecrets(object):
    def get_password(self, browser):
        return None


def make_jwt(exp):
    payload = base64.urlsafe_b64encode(json.dumps({'exp': exp}).encode()).rstrip(b'=').decode()
    return f'{JWT_HEADER}.{payload}.c2ln'


class TestExtractionSession(unittest.TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.browsers = []
        for browser in registry.all_browsers():
            profile = os.path.join(self.root, browser.id)
            os.makedirs(profile)
            self.browsers.append(browser._replace(
                cookie_path=os.path.join(profile, os.path.basename(browser.cookie_path)),
                indexeddb_path=os.path.join(profile, 'IndexedDB') if browser.indexeddb_path else None))
        self.session = ExtractionSession(secrets=NoSecrets(), browsers=self.browsers)

    def tearDown(self):
        shutil.rmtree(self.root)

    def descriptor(self, browser_id):
        return self.session.find_browser(browser_id)

    def write_indexeddb_token(self, browser_id, token):
        idb_path = os.path.join(self.descriptor(browser_id).indexeddb_path, registry.AKIFLOW.indexeddb_folder)
        os.makedirs(idb_path, exist_ok=True)
        with open(os.path.join(idb_path, '000003.log'), 'ab') as segment:
            segment.write(b'\x00' + token.encode() + b'\x00')

    def write_cookie(self, browser_id, value):
        conn = sqlite3.connect(self.descriptor(browser_id).cookie_path)
        conn.execute('CREATE TABLE IF NOT EXISTS cookies (host_key TEXT, name TEXT, value TEXT, '
                     'encrypted_value BLOB, expires_utc INTEGER)')
        conn.execute('INSERT INTO cookies VALUES (?, ?, ?, ?, ?)', ('.akiflow.com', 'remember_web_1', value, b'', 0))
        conn.commit()
        conn.close()

    def write_safari_cookie(self, value):
        strings = b'.akiflow.com\x00remember_web_1\x00/\x00' + value.encode() + b'\x00'
        offsets = (56, 69, 84, 86)
        record = struct.pack('<IIII', 56 + len(strings), 0, 0, 0) + struct.pack('<IIII', *offsets) + \
            b'\x00' * 8 + struct.pack('<dd', 0.0, 0.0) + strings
        page = b'\x00\x00\x01\x00' + struct.pack('<II', 1, 16) + b'\x00' * 4 + record
        with open(self.descriptor('safari').cookie_path, 'wb') as cookie_file:
            cookie_file.write(b'cook' + struct.pack('>II', 1, len(page)) + page + b'\x00' * 8)

    def test_nothing_installed(self):
        for browser in self.browsers:
            with self.subTest(browser=browser.id):
                self.assertEqual(self.session.scan_one(browser.id), [])
        self.assertEqual(self.session.scan_all(), [])

    def test_unknown_browser(self):
        self.assertEqual(self.session.scan_one('firefox'), [])

    def test_indexeddb_hit_skips_cookies(self):
        token = make_jwt(int(time.time()) + 3600)
        self.write_indexeddb_token('chrome', token)
        self.write_cookie('chrome', 'cookie-token')

        with mock.patch.object(Chrome, 'get_cookies', autospec=True, return_value=[]) as get_cookies:
            tokens = self.session.scan_all()

        self.assertEqual([t.token for t in tokens], [token])
        called_for = [call[0][0].browser_id for call in get_cookies.call_args_list]
        self.assertNotIn('chrome', called_for)
        self.assertEqual(called_for, ['arc', 'brave', 'edge'])

    def test_falls_back_to_cookies(self):
        self.write_cookie('brave', 'cookie-token')

        tokens = self.session.scan_one('brave')

        self.assertEqual([(t.browser, t.token) for t in tokens], [('brave', 'cookie-token')])

    def test_expired_indexeddb_token_falls_back_to_cookies(self):
        self.write_indexeddb_token('edge', make_jwt(int(time.time()) - 60))
        self.write_cookie('edge', 'cookie-token')

        self.assertEqual([t.token for t in self.session.scan_one('edge')], ['cookie-token'])

    def test_safari_dispatch(self):
        self.write_safari_cookie('safari-token')

        with mock.patch.object(Chrome, 'get_cookies', autospec=True) as chrome_cookies:
            tokens = self.session.scan_one('safari')

        self.assertEqual([(t.browser, t.token) for t in tokens], [('safari', 'safari-token')])
        chrome_cookies.assert_not_called()

    def test_registry_order_without_deduplication(self):
        token = make_jwt(int(time.time()) + 3600)
        self.write_safari_cookie('shared')
        self.write_cookie('edge', 'shared')
        self.write_indexeddb_token('arc', token)
        self.write_indexeddb_token('chrome', token)

        expected = [('chrome', token), ('arc', token), ('edge', 'shared'), ('safari', 'shared')]

        for max_workers in (1, 4):
            with self.subTest(max_workers=max_workers):
                self.session.max_workers = max_workers
                tokens = self.session.scan_all()
                self.assertEqual([(t.browser, t.token) for t in tokens], expected)

    def test_timeout_drops_slow_browser(self):
        session = ExtractionSession(secrets=NoSecrets(), browsers=self.browsers[:1], max_workers=2, timeout=0.01)
        with mock.patch.object(ExtractionSession, 'scan_browser', autospec=True) as scan_browser:
            scan_browser.side_effect = lambda self_, descriptor: time.sleep(0.5) or []
            self.assertEqual(session.scan_all(), [])

    def test_timeout_is_one_deadline_for_all_browsers(self):
        delays = {'chrome': 0.3, 'arc': 0.7}

        def slow_scan(self_, descriptor):
            time.sleep(delays[descriptor.id])
            return [f'{descriptor.id}-token']

        session = ExtractionSession(secrets=NoSecrets(), browsers=self.browsers[:2], max_workers=2, timeout=0.5)
        with mock.patch.object(ExtractionSession, 'scan_browser', autospec=True, side_effect=slow_scan):
            self.assertEqual(session.scan_all(), ['chrome-token'])

    def test_unexpected_io_error_propagates(self):
        self.write_cookie('chrome', 'cookie-token')
        snapshot_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, snapshot_dir)

        with mock.patch.object(tempfile, 'tempdir', snapshot_dir):
            with mock.patch('pysessionsight.utils.LocalFileReader.copy', side_effect=PermissionError(13, 'denied')):
                with self.assertRaises(PermissionError):
                    self.session.scan_one('chrome')

        self.assertEqual(os.listdir(snapshot_dir), [])


if __name__ == '__main__':
    unittest.main()
