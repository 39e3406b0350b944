"""
buildloop - session orchestration engine for plan/code/verify/repair workflows
"""

__version__ = "1.0.0"
