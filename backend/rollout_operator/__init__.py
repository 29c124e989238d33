"""
Rollout operator: reconciles multi-component applications toward their declared versions.
"""
__version__ = "1.0.0"
