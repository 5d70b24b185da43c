"""
Central constants for the document lifecycle core.
"""
from __future__ import annotations

# Hops followed by a single lineage traversal before ChainDepthExceeded.
MAX_CHAIN_DEPTH = 100

AUDIT_LOGGER_NAME = "app.doclife.audit"

MAX_FILE_REF_LENGTH = 512
MAX_REF_ID_LENGTH = 64
MAX_REASON_LENGTH = 255
