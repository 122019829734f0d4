"""
Transport-neutral service handlers.
"""
