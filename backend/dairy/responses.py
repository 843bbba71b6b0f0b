# Overview: JSON response envelope shared by every API route.

from flask import jsonify


def success(data=None, message: str | None = None, status: int = 200):
    """{"success": true, "data": ..., "message"?: ...}"""
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def failure(message: str, status: int = 400, errors: dict | None = None, data=None):
    """{"success": false, "message": ..., "errors"?: {...}}"""
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    if data is not None:
        body["data"] = data
    return jsonify(body), status
