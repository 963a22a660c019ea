"""Router package - collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from mineserver.routers import admin, health, mining, rewards


def register_all_routers(app: FastAPI):
    app.include_router(health.router)
    app.include_router(mining.router)
    app.include_router(rewards.router)
    app.include_router(admin.router)
