"""Jitsi Meet Reconciler (JMR).

Installer/updater for a docker-based Jitsi Meet stack:
 - installs Docker Engine from the vendor repositories
 - materializes .env and docker-compose.yml without clobbering local edits
 - starts the stack and waits for the XMPP server
 - provisions the administrator account in Prosody

Safe to re-run: every step converges instead of duplicating state.
"""

__version__ = "1.0.0"
