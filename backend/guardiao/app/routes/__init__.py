"""Router modules exposed by the Guardião API."""
from . import auth, consentimentos, dsar

__all__ = ["auth", "consentimentos", "dsar"]
