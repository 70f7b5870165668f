import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session, sessionmaker

from supply_desk.config import settings
from supply_desk.error_handlers import install_error_handlers
from supply_desk.logging_config import configure_logging
from supply_desk.routers import inventory, supply_requests
from supply_desk.security.headers import install_security_headers
from supply_desk.security.identity import install_identity_middleware
from supply_desk.services.fulfillment_workflow import FulfillmentWorkflow
from supply_desk.services.notification_service import get_change_sink


def create_app(
    session_factory: sessionmaker[Session] | None = None,
    workflow: FulfillmentWorkflow | None = None,
) -> FastAPI:
    if session_factory is None:
        from supply_desk.db import SessionLocal

        session_factory = SessionLocal

    app = FastAPI(title='Supply Desk')
    app.state.session_factory = session_factory
    app.state.workflow = workflow or FulfillmentWorkflow(session_factory, change_sink=get_change_sink())

    install_security_headers(app)
    install_identity_middleware(app)
    install_error_handlers(app)

    app.include_router(supply_requests.router)
    app.include_router(inventory.router)

    @app.get('/health')
    def health() -> dict:
        return {'status': 'ok'}

    @app.get('/robots.txt', response_class=PlainTextResponse)
    def robots_txt() -> str:
        return 'User-agent: *\nDisallow: /\n'

    return app


configure_logging()
app = create_app()


def run() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
