"""
Jitsi OIDC Bridge

Lets a Jitsi Meet server delegate user login to an OpenID Connect identity
provider. After a successful authorization-code handshake the bridge signs a
short-lived Jitsi session token and redirects the browser to the meeting.
"""

__version__ = "1.0.0"
