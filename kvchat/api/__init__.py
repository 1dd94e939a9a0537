"""
kvchat :: API
"""
