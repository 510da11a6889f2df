"""
Sales Project Workflow Platform
Blueprint registry.
"""

from salesflow.blueprints.health_bp import health_bp
from salesflow.blueprints.notification_bp import notification_bp
from salesflow.blueprints.workflow_bp import workflow_bp

ALL_BLUEPRINTS = (health_bp, workflow_bp, notification_bp)
