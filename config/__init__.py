"""Deployment configuration for the inspection dashboard.

Modules here hold settings that can be adjusted per deployment without
touching application code, such as the Supabase table layout.
"""
