from setuptools import setup, find_packages
setup(
  name='pysessionsight',
  python_requires='>=3.8',
  packages=find_packages(exclude=['tests', 'tests.*']),
  include_package_data=True,
  version='20261019.0',
  description='Recover a web session token from Chrome-family, Safari and IndexedDB browser storage',
  license='Apache',
  keywords=['chrome', 'safari', 'cookies', 'indexeddb', 'jwt', 'keychain'],
  classifiers=[],
  install_requires=[
    'keyring>=21.2.1',
    'pycryptodomex>=3.9.7',
    'pytz>=2021.3',
  ]
)
