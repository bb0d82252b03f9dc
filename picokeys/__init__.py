"""Smart-card core for security keys: APDU handling, BER-TLV, secure messaging, a flash-backed file system and LED blink patterns."""

__version__ = "0.1.0"

__all__ = ["apdu", "asn1", "crypto", "eac", "filesystem", "flash", "led"]