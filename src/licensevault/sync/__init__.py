"""
Encrypted sync -- license files mirrored to git as ciphertext.

The files never leave the machine in the clear. Every push encrypts
with AES-256-GCM; every pull decrypts back into the working copy.

Remote: any git host reachable over HTTPS (token) or SSH (deploy key).
Backup: Dropbox or a local directory, whole-file copies, also encrypted.
"""

from .cipher import Cipher
from .engine import SyncEngine
from .git_remote import GitRemote

__all__ = ["Cipher", "GitRemote", "SyncEngine"]
