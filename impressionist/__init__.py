"""
Impressionist story engine
"""
