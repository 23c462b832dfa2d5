#!/usr/bin/env python

import os
import re
from setuptools import setup

version_file = os.path.join('graphql_multipart', '__init__.py')
with open(version_file, 'rb') as f:
    version_data = f.read().strip().decode('ascii')

version_re = re.compile(r'__version__ = "((?:\d+)\.(?:\d+)\.(?:\d+))"')
version = version_re.search(version_data).group(1)

tests_require = [
    'pytest',
    'pytest-cov',
    'pytest-timeout',
    'PyYAML',
    'invoke',
]

setup(name='graphql-multipart',
      version=version,
      description='A streaming decoder for GraphQL multipart upload requests',
      license='Apache',
      platforms='any',
      zip_safe=False,
      extras_require={
          'test': tests_require,
          'fuzz': ['atheris'],
      },
      packages=[
          'graphql_multipart',
      ],
      python_requires='>=3.8',
      classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Topic :: Internet :: WWW/HTTP :: WSGI',
        'Topic :: Internet :: WWW/HTTP :: Dynamic Content'
      ],
     )
