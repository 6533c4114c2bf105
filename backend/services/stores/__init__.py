"""
Print Broker Settlement Hub - Settlement Stores

Components:
- SettlementStore / JobScope: transactional persistence interface
- InMemorySettlementStore: process-local implementation for testing
- MongoSettlementStore: motor-backed implementation with multi-document transactions
"""

from .base import SettlementStore, JobScope, format_job_number
from .memory import InMemorySettlementStore, InMemoryJobScope
from .mongo import MongoSettlementStore, MongoJobScope, get_database

__all__ = [
    'SettlementStore',
    'JobScope',
    'format_job_number',
    'InMemorySettlementStore',
    'InMemoryJobScope',
    'MongoSettlementStore',
    'MongoJobScope',
    'get_database',
]
