"""Gateway route synchronisation (gwsync).

Keeps a gateway's HTTP mapping rules in step with a service registry that
offers no push notifications:
 - polls the registry on a fixed delay
 - filters services with configured label selector groups
 - publishes incremental add/remove mapping rule updates
 - proxies requests for the published context paths
"""
