"""
Model mixins shared across entities.
"""

from alert_engine.models.mixins.guid import GuidMixin, decode_guid, encode_guid

__all__ = ["GuidMixin", "decode_guid", "encode_guid"]
