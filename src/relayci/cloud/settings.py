from __future__ import annotations
import os

# os.pathsep-separated files or directories holding pipeline definitions
DEFINITIONS = [p for p in os.environ.get("RELAYCI_DEFINITIONS", ".github/workflows").split(os.pathsep) if p]
HISTORY_LIMIT = int(os.environ.get("RELAYCI_HISTORY_LIMIT", "500"))
