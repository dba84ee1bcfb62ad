"""
Matrix protocol pieces: discovery, password login, the session and event routing.
"""
