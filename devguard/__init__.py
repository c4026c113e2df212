"""devguard: single-host hardening and network enforcement."""
