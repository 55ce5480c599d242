"""
Utility modules: logging, connection gateway, push broker, mail transport
and template rendering.
"""
