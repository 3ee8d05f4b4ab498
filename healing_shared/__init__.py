"""
Self-Healing Engine - Shared Library
====================================

Constants, schemas, and utilities shared by the engine service and its
adapters. Keeps the domain vocabulary (patterns, actions, executions,
approvals, audit entries) in one place.
"""

__version__ = "0.1.0"
__author__ = "Self-Healing Engine Team"
