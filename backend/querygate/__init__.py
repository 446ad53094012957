# backend/querygate/__init__.py
from __future__ import annotations

"""
Marks `querygate` as a Python package.

Persistence lives in querygate.models / querygate.db, the approval state
machine and execution subsystem in querygate.services.
"""
