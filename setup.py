"""
Setup script for AnonChat - messenger client with optional end-to-end encryption.

This client provides:
- Conversations through a shared HTTP/WebSocket message store
- Optional end-to-end encryption (ECDH P-256 + AES-256-GCM)
- Merged history and live delivery without duplicates
- Portable account files, optionally password protected
- Terminal front-end
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='anonchat-messenger',
    version='1.0.0',
    description='A messenger client with optional end-to-end encryption over a shared message store',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'httpx>=0.25.0',
        'websockets>=12.0',
        'rich>=13.7.0',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'anonchat=anonchat.main:main',
        ],
    },
)
