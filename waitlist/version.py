# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

# File for tracking the application version
from os.path import abspath, dirname, join

_ROOT = dirname(dirname(abspath(__file__)))

try:
    from setuptools_scm import get_version
    __version__ = get_version(root=_ROOT)

except (ImportError, LookupError, OSError):
    try:
        with open(join(_ROOT, "version.txt"), "r") as f:
            __version__ = f.read().strip()
    except (FileNotFoundError, IOError):
        __version__ = "0.0.0"
