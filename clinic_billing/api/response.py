# FILE: clinic_billing/api/response.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def ok(
    data: Any = None,
    *,
    meta: Optional[Dict[str, Any]] = None,
    status_code: int = 200,
) -> JSONResponse:
    """
    Standard success wrapper:
    {
      "ok": true,
      "data": ...,
      "meta": {...} (optional)
    }
    """
    payload: Dict[str, Any] = {"ok": True, "data": data}
    if meta is not None:
        payload["meta"] = meta

    # Decimal amounts go out as strings so no precision is lost
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(payload, custom_encoder={Decimal: str}),
    )


def err(
    msg: str = "Something went wrong",
    *,
    status_code: int = 400,
    code: Optional[str] = None,
    details: Any = None,
    retryable: bool = False,
) -> JSONResponse:
    """
    Standard error wrapper:
    {
      "ok": false,
      "error": {
        "msg": "...",
        "code": "...",
        "details": ...,
        "retryable": false
      }
    }
    """
    payload: Dict[str, Any] = {
        "ok": False,
        "error": {
            "msg": msg,
            "code": code,
            "details": details,
            "retryable": retryable,
        },
    }
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(payload, custom_encoder={Decimal: str}),
    )
