# clinic_billing/api/router.py
from fastapi import APIRouter
from clinic_billing.api import (
    routes_billing,
    routes_insurance,
    routes_patients,
    routes_services,
)

api_router = APIRouter()

api_router.include_router(routes_billing.router,
                          prefix="/billing",
                          tags=["Billing"])
api_router.include_router(routes_insurance.router,
                          prefix="/insurance",
                          tags=["Insurance"])
api_router.include_router(routes_services.router,
                          prefix="/services",
                          tags=["Services"])
api_router.include_router(routes_patients.router,
                          prefix="/patients",
                          tags=["Patients"])
