"""
Identity Resolution Domain Models

Identity Graph
- Brand, Customer and Session nodes; one canonical key per entity
- Session key: internalSessionId (external-provider sessions get a derived one)
- Customer key: normalized email
- Alternate session lookup keys: brazeSession, amplitudeSession, email
- Optional fields are only ever set, never erased
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4


class Provider(str, Enum):
    """Session id issuers"""
    BRAZE = "braze"
    AMPLITUDE = "amplitude"
    INTERNAL = "internal"


class LookupKey(str, Enum):
    """Session lookup keys, valued by the Session property they match"""
    INTERNAL_SESSION_ID = "internalSessionId"
    BRAZE_SESSION = "brazeSession"
    AMPLITUDE_SESSION = "amplitudeSession"
    EMAIL = "email"


# First match wins. After stitching one customer can match on several keys,
# so the order decides which session represents the request.
LOOKUP_PRIORITY = [
    LookupKey.INTERNAL_SESSION_ID,
    LookupKey.BRAZE_SESSION,
    LookupKey.AMPLITUDE_SESSION,
    LookupKey.EMAIL,
]

PROVIDER_LOOKUP_KEY = {
    Provider.BRAZE: LookupKey.BRAZE_SESSION,
    Provider.AMPLITUDE: LookupKey.AMPLITUDE_SESSION,
    Provider.INTERNAL: LookupKey.INTERNAL_SESSION_ID,
}

EXTERNAL_SESSION_FIELDS = (LookupKey.BRAZE_SESSION.value, LookupKey.AMPLITUDE_SESSION.value)


class RelinkPolicy(str, Enum):
    """What to do when a linked session is linked again to a different customer"""
    REPOINT = "repoint"  # replace BELONGS_TO and log a warning
    REJECT = "reject"    # raise RelinkConflict, write nothing


class LinkOutcome(str, Enum):
    CREATED = "created"
    UNCHANGED = "unchanged"
    RELINKED = "relinked"


class SessionState(str, Enum):
    """Anonymous -> Linked -> Stitched, never backwards"""
    ANONYMOUS = "anonymous"
    LINKED = "linked"
    STITCHED = "stitched"


class Brand:
    def __init__(self, id: str, name: Optional[str] = None, slug: Optional[str] = None):
        self.id = id
        self.name = name
        self.slug = slug

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'Brand':
        return cls(id=record['id'], name=record.get('name'), slug=record.get('slug'))

    def to_dict(self) -> Dict:
        return {'id': self.id, 'name': self.name, 'slug': self.slug}


class Customer:
    def __init__(
        self,
        id: str,
        email: Optional[str] = None,
        internal_session_id: Optional[str] = None,
        phone: Optional[str] = None,
        created_at: Optional[str] = None
    ):
        self.id = id
        self.email = email
        self.internal_session_id = internal_session_id
        self.phone = phone
        self.created_at = created_at

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'Customer':
        return cls(
            id=record['id'],
            email=record.get('email'),
            internal_session_id=record.get('internalSessionId'),
            phone=record.get('phone'),
            created_at=record.get('createdAt')
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'email': self.email,
            'internalSessionId': self.internal_session_id,
            'phone': self.phone,
            'createdAt': self.created_at
        }


class Session:
    def __init__(
        self,
        id: str,
        internal_session_id: str,
        braze_session: Optional[str] = None,
        amplitude_session: Optional[str] = None,
        email: Optional[str] = None,
        brand_id: Optional[str] = None,
        created_at: Optional[str] = None,
        last_seen_at: Optional[str] = None
    ):
        self.id = id
        self.internal_session_id = internal_session_id
        self.braze_session = braze_session
        self.amplitude_session = amplitude_session
        self.email = email
        self.brand_id = brand_id
        self.created_at = created_at
        self.last_seen_at = last_seen_at

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'Session':
        return cls(
            id=record['id'],
            internal_session_id=record['internalSessionId'],
            braze_session=record.get('brazeSession'),
            amplitude_session=record.get('amplitudeSession'),
            email=record.get('email'),
            brand_id=record.get('brandId'),
            created_at=record.get('createdAt'),
            last_seen_at=record.get('lastSeenAt')
        )

    @property
    def is_external(self) -> bool:
        """Carries a Braze or Amplitude session id"""
        return bool(self.braze_session or self.amplitude_session)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'internalSessionId': self.internal_session_id,
            'brazeSession': self.braze_session,
            'amplitudeSession': self.amplitude_session,
            'email': self.email,
            'brandId': self.brand_id,
            'createdAt': self.created_at,
            'lastSeenAt': self.last_seen_at
        }


class SessionFields:
    """
    Optional Session attributes for an upsert.
    Only non-null values are written; None means "leave as stored".
    """
    def __init__(
        self,
        email: Optional[str] = None,
        braze_session: Optional[str] = None,
        amplitude_session: Optional[str] = None,
        brand_id: Optional[str] = None
    ):
        self.email = email
        self.braze_session = braze_session
        self.amplitude_session = amplitude_session
        self.brand_id = brand_id

    @classmethod
    def for_provider(
        cls,
        provider: Provider,
        external_session_id: str,
        brand_id: Optional[str] = None,
        email: Optional[str] = None
    ) -> 'SessionFields':
        """Put the external id in the field belonging to its provider"""
        return cls(
            email=email,
            braze_session=external_session_id if provider == Provider.BRAZE else None,
            amplitude_session=external_session_id if provider == Provider.AMPLITUDE else None,
            brand_id=brand_id
        )

    def to_properties(self) -> Dict[str, str]:
        properties = {
            'email': self.email,
            'brazeSession': self.braze_session,
            'amplitudeSession': self.amplitude_session,
            'brandId': self.brand_id,
        }
        return {k: v for k, v in properties.items() if v is not None}


class CustomerFields:
    """Optional Customer attributes for an upsert (set-if-present)"""
    def __init__(self, internal_session_id: Optional[str] = None, phone: Optional[str] = None):
        self.internal_session_id = internal_session_id
        self.phone = phone

    def to_properties(self) -> Dict[str, str]:
        properties = {
            'internalSessionId': self.internal_session_id,
            'phone': self.phone,
        }
        return {k: v for k, v in properties.items() if v is not None}


class LoyaltyMetrics:
    """Cross-brand aggregates for one customer"""
    def __init__(
        self,
        total_sessions: int = 0,
        total_brands: int = 0,
        cross_brand_activity: bool = False,
        last_activity: Optional[str] = None,
        last_brand: Optional[Brand] = None
    ):
        self.total_sessions = total_sessions
        self.total_brands = total_brands
        self.cross_brand_activity = cross_brand_activity
        self.last_activity = last_activity
        self.last_brand = last_brand

    def to_dict(self) -> Dict:
        return {
            'totalSessions': self.total_sessions,
            'totalBrands': self.total_brands,
            'crossBrandActivity': self.cross_brand_activity,
            'lastActivity': self.last_activity,
            'lastBrand': self.last_brand.to_dict() if self.last_brand else None
        }


class LoyaltyFilters:
    """Filters for the all-customers activity listing"""
    def __init__(
        self,
        cross_brand_only: bool = False,
        min_sessions: Optional[int] = None,
        min_brands: Optional[int] = None
    ):
        self.cross_brand_only = cross_brand_only
        self.min_sessions = min_sessions
        self.min_brands = min_brands

    def accepts(self, metrics: LoyaltyMetrics) -> bool:
        if self.cross_brand_only and not metrics.cross_brand_activity:
            return False
        if self.min_sessions is not None and metrics.total_sessions < self.min_sessions:
            return False
        if self.min_brands is not None and metrics.total_brands < self.min_brands:
            return False
        return True


class IdentityHelper:
    """Utility functions for identity normalization"""

    @staticmethod
    def normalize_email(email: Optional[str]) -> Optional[str]:
        """Lowercase and strip; blank becomes None"""
        if email is None:
            return None
        normalized = email.strip().lower()
        return normalized or None

    @staticmethod
    def normalize_phone(phone: Optional[str]) -> Optional[str]:
        """Normalize phone to E.164 format (basic)"""
        if not phone:
            return None
        digits = ''.join(c for c in phone if c.isdigit())
        if not digits:
            return None

        # Add +1 if US number without country code
        if len(digits) == 10:
            return f"+1{digits}"
        return f"+{digits}"

    @staticmethod
    def derive_internal_session_id(
        provider: Provider,
        external_session_id: str,
        brand_id: Optional[str] = None
    ) -> str:
        """
        Stable internal id for an anonymous external-provider session.
        Same (provider, externalSessionId, brandId) always yields the same id,
        which is what makes repeated identify calls idempotent.
        """
        return f"{Provider(provider).value}:{external_session_id}:{brand_id or ''}"

    @staticmethod
    def generate_id() -> str:
        return str(uuid4())

    @staticmethod
    def utc_now_iso() -> str:
        """Fixed-width UTC timestamp; lexical order is time order"""
        return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def latest_first(sessions: List[Session]) -> List[Session]:
    """Sessions ordered by lastSeenAt, most recent first"""
    return sorted(sessions, key=lambda s: s.last_seen_at or '', reverse=True)
