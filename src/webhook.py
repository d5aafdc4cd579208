"""
Admission Webhook Server - HTTP surface for the admission validators.

Serves the validating webhook endpoints with FastAPI under uvicorn,
optionally over TLS.
"""

import logging
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from admission import (
    ROUTES,
    AdmissionHandler,
    AdmissionKind,
    AdmissionRequest,
    AdmissionResponse,
)

logger = logging.getLogger(__name__)


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str


class AdmissionReviewRequest(BaseModel):
    """The request half of an AdmissionReview."""

    model_config = ConfigDict(populate_by_name=True)

    uid: str
    kind: GroupVersionKind
    operation: str = ""
    namespace: str = ""
    name: str = ""
    object_: Optional[Dict[str, Any]] = Field(default=None, alias="object")

    def to_admission_request(self) -> AdmissionRequest:
        return AdmissionRequest(
            uid=self.uid,
            kind=self.kind.kind,
            operation=self.operation,
            namespace=self.namespace,
            name=self.name,
            object=self.object_ or {},
        )


class AdmissionReview(BaseModel):
    """Request model for an admission.k8s.io/v1 AdmissionReview."""

    apiVersion: str = "admission.k8s.io/v1"
    kind: str = "AdmissionReview"
    request: Optional[AdmissionReviewRequest] = None


class WebhookServer:
    """
    Validating admission webhook server.

    Exposes one POST endpoint per AdmissionKind route plus a health check.
    """

    def __init__(
        self,
        handler: AdmissionHandler,
        host: str = "0.0.0.0",
        port: int = 9443,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
    ):
        self.handler = handler
        self.host = host
        self.port = port
        self.cert_file = cert_file
        self.key_file = key_file
        self.server: Optional[uvicorn.Server] = None

        self.app = FastAPI(
            title="Volume Unregister Operator Webhook",
            description="Validating admission webhooks for storage objects",
            version="1.0.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes.

        Configures:
        - Health check: GET /healthz
        - Validation: POST /validate-storageclass, POST /validate-registervolume
        """

        @self.app.get("/healthz")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "volume-unregister-webhook"}

        for path, kind in ROUTES.items():
            self.app.add_api_route(
                path,
                self._make_endpoint(kind),
                methods=["POST"],
                name=f"validate-{kind.value.lower()}",
            )

    def _make_endpoint(self, kind: AdmissionKind):
        async def validate(request: Request):
            body = await request.body()
            if not body:
                logger.error("received empty request body")
                return PlainTextResponse("received empty request body", status_code=400)

            content_type = request.headers.get("content-type", "")
            if content_type.split(";")[0].strip() != "application/json":
                logger.error(f"Content-Type={content_type}, expect application/json")
                return PlainTextResponse(
                    "invalid Content-Type, expect `application/json`",
                    status_code=415,
                )

            try:
                review = AdmissionReview.model_validate_json(body)
            except ValidationError as e:
                logger.error(f"Can't decode body: {e}")
                response = AdmissionResponse(allowed=False, message=str(e))
            else:
                admission_request = (
                    review.request.to_admission_request() if review.request else None
                )
                response = await self.handler.review(kind, admission_request)

            logger.debug(f"admissionResponse for {kind.value}: {response}")
            return JSONResponse(response.to_review())

        return validate

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
            ssl_certfile=self.cert_file,
            ssl_keyfile=self.key_file,
        )
        self.server = uvicorn.Server(config)

        if self.cert_file and self.key_file:
            logger.info(f"Starting secure webhook server on {self.host}:{self.port}")
        else:
            logger.info(
                f"Starting webhook server insecurely on {self.host}:{self.port}"
            )
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping webhook server")
        if self.server:
            self.server.should_exit = True
