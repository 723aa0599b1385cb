"""Setup commands for the dropbox_repl package.

See:
https://packaging.python.org/en/latest/distributing.html
https://github.com/pypa/sampleproject
"""

# Always prefer setuptools over distutils
from setuptools import setup
import io
from os import path
import re


here = path.abspath(path.dirname(__file__))


def read(*names, **kwargs):
    with io.open(
        path.join(here, *names),
        encoding=kwargs.get("encoding", "utf8")
    ) as fp:
        return fp.read()


def find_version(*file_paths):
    version_file = read(*file_paths)
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]",
                              version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")


setup(
    name='dropbox_repl',

    # Versions should comply with PEP440.  The version is single-sourced
    # from the module itself.
    version=find_version('dropbox_repl.py'),

    description='Explore the Dropbox v2 HTTP API from a Python session',
    long_description=read('README.md'),
    long_description_content_type='text/markdown',

    license='Apache 2.0',

    # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
    classifiers=[
        'Development Status :: 4 - Beta',

        'Intended Audience :: Developers',

        'License :: OSI Approved :: Apache Software License',

        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',

        'Topic :: Internet :: WWW/HTTP',
    ],

    keywords='Dropbox API REPL',

    python_requires='>=3.6',

    # A single module, no packages
    py_modules=['dropbox_repl'],

    # List run-time dependencies here.  These will be installed by pip when
    # your project is installed. For an analysis of "install_requires" vs pip's
    # requirements files see:
    # https://packaging.python.org/en/latest/requirements.html
    install_requires=['requests'],

    extras_require={
        'test': ['pytest'],
    },
)
