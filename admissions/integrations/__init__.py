"""admissions.integrations — External service gateway modules.

All outbound HTTP calls to the student information system (SIS) and the
learning management system (LMS) must go through a gateway in this
package, never via bare `requests` calls in services or blueprints.

Every call is:
  - Authenticated (API key injected by the gateway)
  - Retried with exponential backoff
  - Circuit-broken to prevent cascade failures
  - Returned as a structured GatewayResult (gateways never raise)

Current gateways:
  sis_gateway.IntegrationGateway — SIS / LMS REST endpoints
  sis_gateway.IntegrationSync    — stage-change sync used by the side-effect outbox
"""
