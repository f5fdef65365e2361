"""
meshadmin - admin dashboard core for a MeshCentral deployment

Schema-driven module settings, a plugin-style module registry, and
webhook-driven notification fan-out (Telegram, email, outgoing webhooks).
"""

__version__ = "2.0.0"
