"""project_base_shared — Shared utilities for project_base deployment Lambdas.

Provides:
    - Lazy boto3 client singletons (CodeBuild, CloudWatch Logs, API Gateway, Lambda)
    - Custom-resource request/response helpers
    - Error taxonomy and ClientError classification
    - HTTP response helpers with CORS
"""

__version__ = "1.0.0"
