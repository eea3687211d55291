"""
licensevault -- license records that survive restarts.

Issues and verifies license records from a local plaintext store and
mirrors an encrypted copy to a git remote (and optionally a cloud
backup), so a fresh process can always pull its state back.
"""

import os

__version__ = "0.1.0"

LICENSE_HOME = os.environ.get("LICENSEVAULT_HOME", "~/.licensevault")
