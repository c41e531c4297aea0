"""
Reservation engine services
"""
