"""
Adapters reconciling the objects owned by 3scale APIManager custom resources.
"""

from apimanager.reconciler import APIManagerReconciler
from apimanager.spec import APIManager

__all__ = ["APIManager", "APIManagerReconciler"]
