"""REST surface: infrastructures, instances, public IPs and node candidates."""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .cloud.aws_provider import AWSEC2Provider
from .config import AppConfig
from .exceptions import (
    ConfigError,
    ConnectorError,
    InfrastructureNotFoundError,
    InstanceNotFoundError,
    InvalidRequestError,
)
from .models import Infrastructure
from .schemas import InfrastructureCreate, InstanceCreate
from .service import InfrastructureService, InstanceService, build_provider

logger = logging.getLogger(__name__)


def _configured_infrastructures(config: AppConfig) -> list[Infrastructure]:
    try:
        return [InfrastructureCreate.model_validate(entry).to_domain() for entry in config.infrastructures]
    except ValidationError as exc:
        raise ConfigError(f"Invalid infrastructure entry: {exc}") from exc


def _missing_instance_parameters() -> InvalidRequestError:
    return InvalidRequestError('The parameters "instanceId" and "instanceTag" are missing.')


def create_app(config: AppConfig, provider: AWSEC2Provider | None = None) -> FastAPI:
    """Build the application around one provider and the infrastructures declared in the config."""
    provider = provider or build_provider(config)
    infrastructures = InfrastructureService(provider, _configured_infrastructures(config))
    instances = InstanceService(infrastructures, provider)

    app = FastAPI(title="IaaS Connector")
    app.state.infrastructures = infrastructures
    app.state.instances = instances

    router = APIRouter(prefix="/infrastructures")

    # ── Infrastructures ─────────────────────────────────────────────

    @router.post("")
    def register_infrastructure(data: InfrastructureCreate):
        return infrastructures.register(data.to_domain()).to_dict()

    @router.get("")
    def list_infrastructures():
        return [i.to_dict() for i in infrastructures.get_all_infrastructures()]

    @router.delete("/{infrastructure_id}")
    def delete_infrastructure(
        infrastructure_id: str,
        delete_instances: bool = Query(False, alias="deleteInstances"),
    ):
        infrastructures.delete_infrastructure(infrastructure_id, delete_instances=delete_instances)
        return {}

    # ── Instances ───────────────────────────────────────────────────

    @router.post("/{infrastructure_id}/instances")
    def create_instance(infrastructure_id: str, data: InstanceCreate):
        created = instances.create_instance(infrastructure_id, data.to_domain())
        return [i.to_dict() for i in created]

    @router.get("/{infrastructure_id}/instances")
    def get_instances(
        infrastructure_id: str,
        instance_id: str | None = Query(None, alias="instanceId"),
        instance_tag: str | None = Query(None, alias="instanceTag"),
    ):
        if instance_id is not None:
            return instances.get_instance_by_id(infrastructure_id, instance_id).to_dict()
        if instance_tag is not None:
            return [i.to_dict() for i in instances.get_instances_by_tag(infrastructure_id, instance_tag)]
        return [i.to_dict() for i in instances.get_all_instances(infrastructure_id)]

    @router.delete("/{infrastructure_id}/instances")
    def delete_instances(
        infrastructure_id: str,
        instance_id: str | None = Query(None, alias="instanceId"),
        instance_tag: str | None = Query(None, alias="instanceTag"),
    ):
        if instance_id is not None:
            instances.delete_instance(infrastructure_id, instance_id)
        elif instance_tag is not None:
            instances.delete_instances_by_tag(infrastructure_id, instance_tag)
        else:
            raise _missing_instance_parameters()
        return {}

    # ── Public IPs ──────────────────────────────────────────────────

    @router.post("/{infrastructure_id}/instances/publicIp")
    def add_public_ip(
        infrastructure_id: str,
        instance_id: str | None = Query(None, alias="instanceId"),
        instance_tag: str | None = Query(None, alias="instanceTag"),
        desired_ip: str | None = Query(None, alias="desiredIp"),
    ):
        if instance_id is not None:
            return {"publicIp": instances.add_to_instance_public_ip(infrastructure_id, instance_id, desired_ip)}
        if instance_tag is not None:
            instances.add_instance_public_ip_by_tag(infrastructure_id, instance_tag)
            return {}
        raise _missing_instance_parameters()

    @router.delete("/{infrastructure_id}/instances/publicIp")
    def remove_public_ip(
        infrastructure_id: str,
        instance_id: str | None = Query(None, alias="instanceId"),
        instance_tag: str | None = Query(None, alias="instanceTag"),
        desired_ip: str | None = Query(None, alias="desiredIp"),
    ):
        if instance_id is not None:
            instances.remove_instance_public_ip(infrastructure_id, instance_id, desired_ip)
        elif instance_tag is not None:
            instances.remove_instance_public_ip_by_tag(infrastructure_id, instance_tag)
        else:
            raise _missing_instance_parameters()
        return {}

    # ── Node candidates ─────────────────────────────────────────────

    @router.get("/{infrastructure_id}/nodecandidates")
    def get_node_candidates(
        infrastructure_id: str,
        region: str = Query(...),
        os: str = Query("Linux"),
        next_token: str | None = Query(None, alias="nextToken"),
    ):
        return instances.get_node_candidates(infrastructure_id, region, os, next_token).to_dict()

    app.include_router(router)
    _install_exception_handlers(app)
    return app


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        fields = "; ".join(
            f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": f"Malformed request: {fields}"})

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(request: Request, exc: InvalidRequestError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(InfrastructureNotFoundError)
    async def infrastructure_not_found_handler(request: Request, exc: InfrastructureNotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(InstanceNotFoundError)
    async def instance_not_found_handler(request: Request, exc: InstanceNotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ConnectorError)
    async def connector_error_handler(request: Request, exc: ConnectorError):
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})
