"""
Policies — template/instance stores, status derivation and expiry tracking.
"""

from app.policies.instance_store import InstanceStore
from app.policies.status import compute_display_status, expiry_warning_text
from app.policies.template_store import TemplateStore

__all__ = ["TemplateStore", "InstanceStore", "compute_display_status", "expiry_warning_text"]
