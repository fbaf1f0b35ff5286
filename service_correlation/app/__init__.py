"""
Role correlation service package.

This package computes, for one identity at a time, which roles of a
directed-acyclic role hierarchy are satisfied by the identity's account
entitlements (detection) and which roles should be granted automatically
by selector rules (assignment). It provides:

- app.correlation: Data model, correlation state, hierarchy traversal,
  profile matching, reconciliation and exception computation.
- app.service: Batch front-end wiring configuration, logging, metrics and
  tracing around per-identity evaluations.

Guidelines:
- One evaluation session per identity; never share a session across threads.
- The role graph, account source and selector evaluator are external
  collaborators consumed through the interfaces in app.correlation.interfaces.
- Keep evaluation deterministic and observable (metrics + logs).
"""
