"""
Xunlei Launcher

Runs the Xunlei download-manager backend under supervision and serves its
web UI through a password-protected CGI panel.
"""

__version__ = "0.1.0"
