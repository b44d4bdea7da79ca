"""
skpass -- password-store engine.

GPG-encrypted secrets in the standard pass layout, kept in step with a
remote Git repository, served race-free to any front-end.

A smilinTux Open Source Project.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

SKPASS_HOME = os.environ.get("SKPASS_HOME", "~/.skpass")
DEFAULT_STORE_DIR = "~/.password-store"
