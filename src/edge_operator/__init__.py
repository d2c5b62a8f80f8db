"""Edge operator: drift reconciliation for Kubernetes ingress, AWS ALB, WAF and Route 53."""

__version__ = "0.1.0"
