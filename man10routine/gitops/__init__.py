from .guard import GitOpsGuard, GuardHandle
