"""
Reservation engine test suite
"""
