from fastapi import APIRouter


def create_health_router(db_backend: str, mcp_transport: str, request_timeout_sec: float) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, object]:
        return {
            "status": "ok",
            "db_backend": db_backend,
            "mcp_transport": mcp_transport,
            "request_timeout_sec": request_timeout_sec,
        }

    return router
