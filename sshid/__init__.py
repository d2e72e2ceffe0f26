"""
sshid - SSH identity manager

Generates key pairs, keeps named Host aliases in the SSH client config and
loads keys into the SSH agent, for people juggling several Git accounts.
"""

__version__ = "1.0.0"
__license__ = "Apache License 2.0"
