"""
Workshop service queue: entry lifecycle, positions, optimistic transactions and update fan-out.
"""
