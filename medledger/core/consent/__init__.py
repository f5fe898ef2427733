from medledger.core.consent.models import EMERGENCY_GRANTEE, ConsentGrant, ConsentStatus
from medledger.core.consent.pipeline import ConsentGrantPipeline
from medledger.core.consent.store import ConsentStore

__all__ = ["EMERGENCY_GRANTEE", "ConsentGrant", "ConsentGrantPipeline", "ConsentStatus", "ConsentStore"]
