"""
WSL Proxy - forwards LAN traffic from a Windows host to a service running inside WSL.
"""
__version__ = "1.0.0"
