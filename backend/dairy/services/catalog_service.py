# Overview: Tenant-scoped product catalog and customer delivery addresses.

from __future__ import annotations

from ..extensions import db
from ..models import Address, Product
from ..validation import (
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_product,
    validate_payload,
)
from .integrations import get_geocoder


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "unit", "price_cents", "is_subscribable", "status", "stock_quantity"},
    required_on_create={"name", "price_cents"},
)

ADDRESS_POLICY = ModelValidationPolicy(
    writable_fields={
        "label", "line1", "line2", "area", "city", "state", "pincode",
        "latitude", "longitude", "is_default",
    },
    required_on_create={"line1", "city", "pincode"},
)


def list_products(org_id: int, *, include_inactive: bool = False, subscribable: bool | None = None) -> list[Product]:
    query = db.session.query(Product).filter(Product.org_id == org_id)
    if not include_inactive:
        query = query.filter(Product.status == "active")
    if subscribable is not None:
        query = query.filter(Product.is_subscribable.is_(subscribable))
    return query.order_by(Product.name, Product.id).all()


def create_product(org_id: int, payload: dict) -> Product:
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)
    product = Product(org_id=org_id, **patch)
    db.session.add(product)
    db.session.commit()
    return product


def update_product(org_id: int, product_id: int, payload: dict) -> Product:
    """
    Price changes apply to future materializations only; delivered and
    scheduled rows keep their snapshot price.
    """
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)
    product = db.session.query(Product).filter_by(id=product_id, org_id=org_id).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    for key, value in patch.items():
        setattr(product, key, value)
    db.session.commit()
    return product


def list_addresses(user_id: int) -> list[Address]:
    return (
        db.session.query(Address)
        .filter(Address.user_id == user_id)
        .order_by(Address.is_default.desc(), Address.id)
        .all()
    )


def create_address(user_id: int, payload: dict) -> Address:
    """
    Add a delivery address. Missing coordinates are resolved through the
    configured geocoder; the first address becomes the default.
    """
    patch = validate_payload(model=Address, payload=payload, policy=ADDRESS_POLICY, partial=False)

    lat, lng = patch.get("latitude"), patch.get("longitude")
    if (lat is None) != (lng is None):
        raise ValidationError("latitude and longitude must be given together")
    if lat is not None and not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError("latitude/longitude out of range")

    has_any = db.session.query(Address.id).filter_by(user_id=user_id).first() is not None
    address = Address(user_id=user_id, **patch)
    if not has_any:
        address.is_default = True
    elif address.is_default:
        db.session.query(Address).filter_by(user_id=user_id).update({"is_default": False})

    if not address.has_coordinates:
        point = get_geocoder().geocode(address)
        if point is not None:
            address.latitude, address.longitude = point

    db.session.add(address)
    db.session.commit()
    return address
