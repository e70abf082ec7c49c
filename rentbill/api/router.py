# rentbill/api/router.py
from fastapi import APIRouter

from rentbill.api import (
    routes_billing_invoices,
    routes_billing_payments,
)

api_router = APIRouter()

# Billing
api_router.include_router(routes_billing_invoices.router)
api_router.include_router(routes_billing_payments.router)
