"""
SMS messaging module.

Scope:
- Templates, gateway configurations (Wigal FROG v3), notification settings
- Compose + send (immediate, scheduled, recurring), birthday wishes
- Delivery-report webhook and analytics

Hard constraints:
- SMS is the only outbound channel (no email)
"""
