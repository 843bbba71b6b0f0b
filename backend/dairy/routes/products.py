# Overview: Flask API routes for the product catalog and customer addresses.

"""
Catalog routes.

MULTI-TENANT: products are scoped to g.org_id; addresses to g.current_user.
Product writes are admin-only.
"""

from flask import Blueprint, g, request

from ..decorators import require_auth, require_role
from ..responses import success
from ..services import catalog_service
from ..validation import require_json_object


products_bp = Blueprint("products", __name__, url_prefix="/api/products")
addresses_bp = Blueprint("addresses", __name__, url_prefix="/api/user/addresses")


@products_bp.get("")
@require_auth
def list_products():
    """
    Query params:
    - subscribable: "true"/"false" (optional)
    - include_inactive: "true" (admin only)
    """
    subscribable = request.args.get("subscribable")
    include_inactive = (
        request.args.get("include_inactive") == "true" and g.current_user.role == "admin"
    )
    products = catalog_service.list_products(
        g.org_id,
        include_inactive=include_inactive,
        subscribable=None if subscribable is None else subscribable == "true",
    )
    return success([p.to_dict() for p in products])


@products_bp.post("")
@require_auth
@require_role("admin")
def create_product():
    product = catalog_service.create_product(g.org_id, require_json_object(request.get_json(silent=True)))
    return success(product.to_dict(), message="Product created", status=201)


@products_bp.put("/<int:product_id>")
@require_auth
@require_role("admin")
def update_product(product_id: int):
    product = catalog_service.update_product(
        g.org_id, product_id, require_json_object(request.get_json(silent=True))
    )
    return success(product.to_dict(), message="Product updated")


@addresses_bp.get("")
@require_auth
def list_addresses():
    return success([a.to_dict() for a in catalog_service.list_addresses(g.current_user.id)])


@addresses_bp.post("")
@require_auth
def create_address():
    address = catalog_service.create_address(
        g.current_user.id, require_json_object(request.get_json(silent=True))
    )
    return success(address.to_dict(), message="Address added", status=201)
