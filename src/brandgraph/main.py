"""
Brandgraph Identity API

Identity resolution and session stitching across brands.
Anonymous Braze/Amplitude sessions and logins resolve to one customer;
loyalty metrics summarize a customer's cross-brand activity.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import redis
from clickhouse_driver import Client
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from brandgraph import __version__
from brandgraph.config import Settings
from brandgraph.controllers.identity_controller import IdentityController
from brandgraph.core.errors import StoreError
from brandgraph.core.identity_model import RelinkPolicy
from brandgraph.models.requests import (
    BrandRequest,
    CustomerSessionRequest,
    IdentifyRequest,
    InternalSessionRequest,
    LinkExternalSessionRequest,
    LinkInternalSessionRequest,
    LinkLoginRequest,
)
from brandgraph.models.responses import (
    BrandModel,
    CustomerActivityResponse,
    CustomerModel,
    CustomerSessionResponse,
    CustomerSessionsResponse,
    CustomerWithSessionsResponse,
    IdentifyResponse,
    LoyaltyProfileResponse,
    ResolvedSessionResponse,
    SessionMatchResponse,
    SessionModel,
)
from brandgraph.repositories.audit_repository import ResolutionAuditRepository
from brandgraph.repositories.graph_store import GraphStore, Neo4jGraphStore
from brandgraph.repositories.identity_repository import IdentityRepository
from brandgraph.repositories.profile_cache_repository import ProfileCacheRepository
from brandgraph.services.identity_service import IdentityResolver
from brandgraph.services.loyalty_service import LoyaltyService

logger = logging.getLogger(__name__)


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


class ServiceContainer:
    """Everything the routes need, wired once per process"""

    def __init__(
        self,
        graph_store: GraphStore,
        relink_policy: RelinkPolicy = RelinkPolicy.REPOINT,
        audit_repo: Optional[ResolutionAuditRepository] = None,
        profile_cache: Optional[ProfileCacheRepository] = None
    ):
        self.graph_store = graph_store
        self.audit_repo = audit_repo
        self.profile_cache = profile_cache
        self.identity_repo = IdentityRepository(graph_store)
        self.resolver = IdentityResolver(self.identity_repo, relink_policy, audit_repo, profile_cache)
        self.loyalty_service = LoyaltyService(self.identity_repo, profile_cache)
        self.controller = IdentityController(self.resolver, self.loyalty_service)
        self.ready = False

    def start(self) -> None:
        """Connect to the graph and ensure its schema; a failure leaves the service not ready"""
        self.check_ready()

        if self.audit_repo is not None:
            try:
                self.audit_repo.ensure_table_exists()
            except Exception as e:
                logger.warning("Audit log table unavailable, resolutions will not be audited: %s", e)

    def check_ready(self) -> bool:
        if self.ready:
            return True
        try:
            self.graph_store.verify_connectivity()
            self.graph_store.ensure_schema()
            self.ready = True
            logger.info("Identity graph ready")
        except StoreError as e:
            self.ready = False
            logger.error("Identity graph not reachable: %s", e)
        return self.ready

    def close(self) -> None:
        self.graph_store.close()


def build_container(settings: Settings) -> ServiceContainer:
    graph_store = Neo4jGraphStore(
        uri=settings.neo4j_uri,
        user=settings.neo4j_user,
        password=settings.neo4j_password,
        database=settings.neo4j_database
    )

    audit_repo = None
    if settings.audit_enabled:
        audit_repo = ResolutionAuditRepository(client=Client(
            host=settings.clickhouse_host,
            port=settings.clickhouse_port,
            user=settings.clickhouse_user,
            password=settings.clickhouse_password,
            database=settings.clickhouse_database
        ))

    profile_cache = None
    if settings.loyalty_cache_enabled:
        profile_cache = ProfileCacheRepository(
            ttl=settings.loyalty_cache_ttl,
            client=redis.Redis(host=settings.redis_host, port=settings.redis_port, decode_responses=True)
        )

    logger.info("Service configuration: %s", settings.describe())
    return ServiceContainer(graph_store, settings.relink_policy, audit_repo, profile_cache)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_controller(request: Request) -> IdentityController:
    return request.app.state.container.controller


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the API. Without a container, one is built from the environment
    at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, 'container', None) is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level)
            app.state.container = build_container(settings)
        app.state.container.start()
        yield
        app.state.container.close()

    app = FastAPI(
        title="Brandgraph Identity API",
        version=__version__,
        description="Identity resolution and session stitching across brands",
        lifespan=lifespan
    )
    app.state.container = container

    @app.get("/")
    def root():
        return {
            "service": "Brandgraph Identity API",
            "version": __version__,
            "endpoints": {
                "identify": "/identity/identify",
                "link_login": "/identity/link-login",
                "quick_identify": "/identity/quick-identify-customer",
                "stitch": "/identity/link-internal-to-existing",
                "loyalty_profile": "/identity/customer-loyalty-profile",
                "health": "/health"
            }
        }

    @app.get("/health")
    def health_check(container: ServiceContainer = Depends(get_container)):
        status = {"status": "healthy", "graph": "ok"}
        try:
            container.graph_store.verify_connectivity()
        except StoreError as e:
            status.update(status="unhealthy", graph=str(e))

        if container.profile_cache is not None:
            try:
                container.profile_cache.ping()
                status["redis"] = "ok"
            except Exception as e:
                status["redis"] = str(e)
        return status

    @app.get("/health/ready")
    def readiness(container: ServiceContainer = Depends(get_container)):
        if container.check_ready():
            return {"ready": True}
        return JSONResponse(status_code=503, content={"ready": False})

    # Brands

    @app.post("/identity/brand", response_model=BrandModel)
    def upsert_brand(request: BrandRequest, controller: IdentityController = Depends(get_controller)):
        return controller.upsert_brand(request)

    @app.get("/identity/brand/{brand_id}", response_model=BrandModel)
    def find_brand(brand_id: str, controller: IdentityController = Depends(get_controller)):
        return controller.find_brand(brand_id)

    # Sessions and links

    @app.post("/identity/identify", response_model=IdentifyResponse)
    def identify(request: IdentifyRequest, controller: IdentityController = Depends(get_controller)):
        """Record an anonymous provider session (never creates a customer)"""
        return controller.identify(request)

    @app.post("/identity/link-login", response_model=IdentifyResponse)
    def link_login(request: LinkLoginRequest, controller: IdentityController = Depends(get_controller)):
        """Link the session to the customer identified at login"""
        return controller.link_on_login(request)

    @app.post("/identity/internal-session", response_model=SessionModel)
    def create_internal_session(request: InternalSessionRequest, controller: IdentityController = Depends(get_controller)):
        return controller.create_internal_session(request)

    @app.post("/identity/customer-session", response_model=CustomerSessionResponse)
    def create_or_update_customer_session(
        request: CustomerSessionRequest,
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.create_or_update_customer_session(request)

    @app.post("/identity/update-customer-session", response_model=SessionModel)
    def update_customer_session(request: CustomerSessionRequest, controller: IdentityController = Depends(get_controller)):
        return controller.update_customer_session(request)

    @app.post("/identity/link-external-session", response_model=CustomerModel)
    def link_external_session(
        request: LinkExternalSessionRequest,
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.link_external_session(request)

    @app.post("/identity/link-internal-session", response_model=CustomerModel)
    def link_internal_session(
        request: LinkInternalSessionRequest,
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.link_internal_session(request)

    @app.post("/identity/link-internal-to-existing", response_model=CustomerModel)
    def link_internal_to_existing(
        request: LinkInternalSessionRequest,
        controller: IdentityController = Depends(get_controller)
    ):
        """Stitch the internal session to every Braze/Amplitude session of the customer"""
        return controller.link_internal_to_existing(request)

    # Lookups

    @app.get("/identity/customer-for-session", response_model=ResolvedSessionResponse)
    def get_customer_for_session(
        provider: str = Query(...),
        external_session_id: str = Query(..., alias="externalSessionId"),
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.get_customer_for_session(provider, external_session_id)

    @app.get("/identity/quick-identify-customer", response_model=ResolvedSessionResponse)
    @app.get("/identity/quick-identify-internal", response_model=ResolvedSessionResponse)
    def quick_identify_customer(
        internal_session_id: str = Query(..., alias="internalSessionId"),
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.quick_identify_customer(internal_session_id)

    @app.get("/identity/quick-identify-external", response_model=ResolvedSessionResponse)
    def quick_identify_external(
        provider: str = Query(...),
        external_session_id: str = Query(..., alias="externalSessionId"),
        brand_id: Optional[str] = Query(None, alias="brandId"),
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.quick_identify_external(provider, external_session_id, brand_id)

    @app.get("/identity/customer-session", response_model=ResolvedSessionResponse)
    def get_customer_session(
        internal_session_id: str = Query(..., alias="internalSessionId"),
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.get_customer_session(internal_session_id)

    @app.get("/identity/find-customer-by-session", response_model=SessionMatchResponse)
    def find_customer_by_session(
        internal_session_id: Optional[str] = Query(None, alias="internalSessionId"),
        braze_session: Optional[str] = Query(None, alias="brazeSession"),
        amplitude_session: Optional[str] = Query(None, alias="amplitudeSession"),
        email: Optional[str] = Query(None),
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.find_customer_by_session(internal_session_id, braze_session, amplitude_session, email)

    @app.get("/identity/find-customer", response_model=CustomerModel)
    def find_customer_by_any_session(
        provider: Optional[str] = Query(None),
        external_session_id: Optional[str] = Query(None, alias="externalSessionId"),
        internal_session_id: Optional[str] = Query(None, alias="internalSessionId"),
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.find_customer_by_any_session(provider, external_session_id, internal_session_id)

    @app.get("/identity/customer-by-email", response_model=SessionMatchResponse)
    def find_customer_by_email(email: str = Query(...), controller: IdentityController = Depends(get_controller)):
        return controller.find_customer_by_email(email)

    @app.get("/identity/customer-with-sessions", response_model=CustomerWithSessionsResponse)
    def get_customer_with_sessions(email: str = Query(...), controller: IdentityController = Depends(get_controller)):
        return controller.get_customer_with_sessions(email)

    @app.get("/identity/customer-latest-session", response_model=SessionModel)
    def get_customer_latest_session(email: str = Query(...), controller: IdentityController = Depends(get_controller)):
        return controller.get_customer_latest_session(email)

    @app.get("/identity/all-customers-sessions", response_model=List[CustomerSessionsResponse])
    def get_all_customers_with_sessions(controller: IdentityController = Depends(get_controller)):
        return controller.get_all_customers_with_sessions()

    # Loyalty

    @app.get("/identity/customer-loyalty-profile", response_model=LoyaltyProfileResponse)
    def get_customer_loyalty_profile(
        email: Optional[str] = Query(None),
        internal_session_id: Optional[str] = Query(None, alias="internalSessionId"),
        controller: IdentityController = Depends(get_controller)
    ):
        """Customer, sessions, brands and cross-brand loyalty metrics"""
        return controller.get_customer_loyalty_profile(email, internal_session_id)

    @app.get("/identity/all-customers-activity", response_model=List[CustomerActivityResponse])
    def get_all_customers_activity(
        cross_brand_only: bool = Query(False, alias="crossBrandOnly"),
        min_sessions: Optional[int] = Query(None, alias="minSessions", ge=0),
        min_brands: Optional[int] = Query(None, alias="minBrands", ge=0),
        controller: IdentityController = Depends(get_controller)
    ):
        return controller.get_all_customers_activity(cross_brand_only, min_sessions, min_brands)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
