"""
Kubeinvoke - Lambda-style task invocation for Kubernetes

Turns HTTP invocations of namespaced Task custom resources into tracked
Kubernetes Jobs.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- config: Environment configuration
- api: Shared data models
- cluster: Kubernetes control-plane access
- registry: Task definition lookups (cached)
- identity: Execution name derivation
- jobs: Job manifest construction
- status: Job phase tracking
- dispatch: Invocation orchestration
"""

__version__ = "1.0.0"
