"""
Capture → OCR → AI Extraction → Local Store → Remote Sync

An offline-first pipeline that turns photographed documents into typed,
locally durable records and keeps them synchronized with a remote
document store.
"""

__version__ = "0.1.0"
