from fastapi import Header, Request

from orderflow.context import AppContext


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def organization_id(x_organization_id: str = Header(..., description="Organization the caller acts for")) -> str:
    return x_organization_id
