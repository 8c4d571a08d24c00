"""
OpenID Provider token service: sealed authorization codes, access and refresh tokens.
POST /token, GET /userinfo. Port 9000.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from op_server.context import context_from_config
from op_server.database import SessionLocal, init_db
from op_server.seed import seed_from_env
from op_server.token_endpoint import router as token_router
from op_server.token_service import TokenService
from op_server.userinfo import router as userinfo_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load sealer keys and signing key, seed a client from env on startup."""
    init_db()
    app.state.token_service = TokenService(context_from_config(SessionLocal))
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    yield


app = FastAPI(title="OP Token Service", version="1.0.0", lifespan=lifespan)
app.include_router(token_router, tags=["token"])
app.include_router(userinfo_router, tags=["userinfo"])


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "op_server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "op_server.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
