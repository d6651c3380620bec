from fastapi import APIRouter

from . import health, leads, appointments, chatbot

api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(leads.router)
api_router.include_router(appointments.router)
api_router.include_router(chatbot.router)
