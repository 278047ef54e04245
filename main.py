import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import LOG_LEVEL
from database import engine, Base
from routes.verifications import router as verifications_router
from routes.expert_reviews import router as expert_reviews_router
from routes.admin import router as admin_router
from routes.settlements import router as settlements_router
from routes.earnings import router as earnings_router

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="VeriMarket API",
    description="Product verification workflow and settlement engine for the marketplace",
    version="1.0.0",
)

_allowed_origins = [
    "http://localhost:3000",
    os.environ.get("FRONTEND_URL", ""),
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in _allowed_origins if o],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(verifications_router)
app.include_router(expert_reviews_router)
app.include_router(admin_router)
app.include_router(settlements_router)
app.include_router(earnings_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "verimarket"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
