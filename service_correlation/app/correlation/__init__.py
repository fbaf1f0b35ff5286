"""
Role correlation package.

Computes which roles of a role hierarchy an identity's account
entitlements satisfy (detection) and which roles selector rules grant
automatically (assignment), then reconciles both against the identity's
persisted results and derives the entitlement exceptions.

Modules of interest:
- models: Roles, identities, accounts, assignments and detections.
- conditions: Attribute conditions used by profile filters and selectors.
- entitlements: EntitlementCollection accumulator (union / subtraction).
- state: Per-pass CorrelationState memoization, keyed by role name.
- graph: In-memory role graph and YAML loader.
- matcher: Top-down hierarchy walk and profile/account matching.
- session: Per-identity EvaluationSession, options and statistics.
- reconciler: Assignment/detection reconciliation and exceptions.
- correlator: Pass orchestration and public entry points.

The role graph, account source and selector evaluator are consumed
through the interfaces module and may be replaced by callers.
"""
