# Vulture whitelist file
# This file contains false positives that vulture incorrectly flags as dead code.
# These are typically framework-registered functions, Pydantic fields, pytest fixtures, etc.
#
# Usage: python3 -m vulture server/gamedeploy server/tests vulture_whitelist.py

# =============================================================================
# FastAPI Route Handlers (registered via @router.get/post/delete decorators)
# =============================================================================
# These functions are called by FastAPI when matching HTTP requests arrive.
# Vulture cannot see this because the registration happens via decorators.

health_check  # routes.py - GET /healthz
validate_deployment  # routes.py - POST /api/v1/deployments/validate
create_deployment  # routes.py - POST /api/v1/deployments
list_deployments  # routes.py - GET /api/v1/deployments
get_deployment  # routes.py - GET /api/v1/deployments/{deployment_id}
get_deployment_logs  # routes.py - GET /api/v1/deployments/{deployment_id}/logs
delete_deployment  # routes.py - DELETE /api/v1/deployments/{deployment_id}

# =============================================================================
# FastAPI application hooks
# =============================================================================
lifespan  # main.py - passed to FastAPI(lifespan=...)

# =============================================================================
# Pydantic Model Fields (accessed via JSON serialization/deserialization)
# =============================================================================
# These are schema fields that API clients read/write via JSON.
# Vulture sees them as unused class variables.

_.game  # Deployment model field
_.updated_at  # Deployment / Job model field
_.ts  # DeploymentLogEntry model field
_.timestamp  # HealthResponse model field
_.details  # HealthResponse model field
_.worker_running  # HealthResponse model field
_.cpu_fraction  # VMRuntimeStatus model field
_.mem_used  # VMRuntimeStatus model field
_.mem_total  # VMRuntimeStatus model field
_.disk_used  # VMRuntimeStatus model field
_.disk_total  # VMRuntimeStatus model field
_.backup_notes  # DeploymentRequest model field
_.sftp_user  # DeploymentResult model field
_.sftp_password  # DeploymentResult model field
_.rcon_host  # DeploymentResult model field
_.online_mode  # MinecraftConfig model field
_.motd  # MinecraftConfig model field
_.operators  # MinecraftConfig model field
_.jvm_flags  # MinecraftConfig model field

# =============================================================================
# Pydantic model_config (ConfigDict for Pydantic v2 configuration)
# =============================================================================
_.model_config  # Pydantic V2 configuration attribute

# =============================================================================
# Pydantic Config class attributes
# =============================================================================
Config  # config.py - Pydantic settings class
_.env_file  # Pydantic settings configuration
_.case_sensitive  # Pydantic settings configuration

# =============================================================================
# Enum members used only through value lookups
# =============================================================================
_.PAUSED  # PowerState
_.PURPUR  # ServerType
_.NEOFORGE  # ServerType

# =============================================================================
# Pytest Fixtures (injected by name)
# =============================================================================
anyio_backend  # conftest.py
make_invoker  # conftest.py
make_settings  # conftest.py
hypervisor_config  # conftest.py
request_payload  # conftest.py
deployment_request  # conftest.py
pipeline_parts  # conftest.py
worker_parts  # test_job_worker.py
teardown_parts  # test_teardown_service.py
restore_config_validation  # test_config_validation.py
api  # test_routes.py
