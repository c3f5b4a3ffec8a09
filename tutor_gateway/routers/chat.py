"""
Tutoring chat API: POST /chat.

The maestro analyzes each message, selects one or more specialist agents,
runs them and returns the merged answer with its orchestration trace.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tutor_gateway.dependencies import get_services
from tutor_gateway.engine import process_chat_request
from tutor_gateway.services import Services

router = APIRouter(tags=["chat"])


@router.post("/chat")
async def chat(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    result = await process_chat_request(request=request, services=services)
    return JSONResponse(status_code=result["status_code"], content=result["body"])
