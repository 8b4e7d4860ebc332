"""
SKVault: one vault, every machine.

Keeps a per-machine vault directory in step across all the machines
one owner runs. Every push is signed, every pull is verified, and
each machine decides which of its files stay home.
"""

import os

__version__ = "2.0.0"
__author__ = "smilinTux"

VAULT_HOME = os.environ.get("SKVAULT_HOME", "~/.skvault")
