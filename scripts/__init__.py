"""
Backend Scripts Module

Available scripts:
    - migrate_to_tenants.py: copies legacy root nodes into tenants/<slug>/

Usage:
    python -m scripts.migrate_to_tenants --slug=my-cafe --dry
"""
