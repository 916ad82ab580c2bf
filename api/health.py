"""
Minimal health-check handler to confirm Vercel runtime execution.
"""

from function_server.config import CORS_ALLOW_ORIGIN


def handler(event, context):
    return {
        "statusCode": 200,
        "headers": {
            "Content-Type": "text/plain",
            "Access-Control-Allow-Origin": CORS_ALLOW_ORIGIN,
        },
        "body": "ok",
    }
