from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from meshcall.routers import signaling
from meshcall.config import settings, ice_servers
import logging

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

app = FastAPI(title="Meshcall Signaling Relay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(signaling.router)


@app.get("/config")
async def rtc_config():
    """Expose ICE server config to the clients."""
    return {"iceServers": ice_servers(settings)}


@app.get("/rooms")
async def list_rooms():
    return signaling.registry.room_list()


@app.get("/health")
async def health_check():
    return {"status": "healthy", "message": "Signaling relay is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
