"""
contact_sync.sync - Contact model, normalization, matching and reconciliation
"""
