"""Static module and role tables used for access control.

These tables seed the `modules`/`permissions` rows and act as the
fallback whenever the permission tables cannot be consulted.
"""

from typing import Dict, List, Optional, Set

ADMIN_ROLE = "admin"
VIEWER_ROLE = "viewer"
DATAENTRY_ROLE = "dataentry"

SYSTEM_ROLES = {
    ADMIN_ROLE: "Full access to every module",
    VIEWER_ROLE: "Read-only access to dashboards and reports",
    DATAENTRY_ROLE: "Sales data entry",
}

ACTIONS = ("view", "edit", "delete")

MODULES = {
    "dashboard": "Dashboard and analytics",
    "clients": "Client management",
    "products": "Product management",
    "brokers": "Broker management",
    "sales_leads": "Sales leads management",
    "client_product_mapping": "Client-product mapping",
    "sales_upload": "Sales data upload",
    "commission_report": "Commission reports",
    "user_management": "User and permission management",
}

# admin is handled separately: it holds every module/action pair.
ROLE_ACCESS: Dict[str, Dict[str, Set[str]]] = {
    VIEWER_ROLE: {
        "dashboard": {"view"},
        "commission_report": {"view"},
    },
    DATAENTRY_ROLE: {
        "sales_upload": {"view", "edit"},
    },
}

ROUTE_MODULES = {
    "/reports/dashboard": "dashboard",
    "/reports/monthly-trends": "dashboard",
    "/reports/commission": "commission_report",
    "/clients": "clients",
    "/products": "products",
    "/brokers": "brokers",
    "/sales-leads": "sales_leads",
    "/client-product-mappings": "client_product_mapping",
    "/sales-data": "sales_upload",
    "/exchange-rates": "sales_upload",
}

METHOD_ACTIONS = {
    "GET": "view",
    "HEAD": "view",
    "POST": "edit",
    "PUT": "edit",
    "PATCH": "edit",
    "DELETE": "delete",
}


def permission_description(module_name: str, action: str) -> str:
    if action == "delete":
        return f"Permission to delete items in {module_name}"
    return f"Permission to {action} {module_name}"


def role_allows(role: Optional[str], module_name: str, action: str = "view") -> bool:
    """Answer a permission question from the static role table alone."""
    if role == ADMIN_ROLE:
        return True
    return action in ROLE_ACCESS.get(role or "", {}).get(module_name, set())


def role_permissions(role: Optional[str]) -> List[dict]:
    """List the `{module_name, name}` pairs a role holds statically."""
    out = []
    for module_name in MODULES:
        for action in ACTIONS:
            if role_allows(role, module_name, action):
                out.append({"module_name": module_name, "name": action})
    return out


def module_for_path(path: str) -> Optional[str]:
    """Map a request path to its module by longest matching prefix."""
    best = None
    for prefix, module_name in ROUTE_MODULES.items():
        if path == prefix or path.startswith(prefix + "/"):
            if best is None or len(prefix) > len(best[0]):
                best = (prefix, module_name)
    return best[1] if best else None


def action_for_method(method: str) -> str:
    return METHOD_ACTIONS.get(method.upper(), "view")
