"""
virtual_datacenter

This package turns a declarative topology into isolated virtual datacenters
on a libvirt host.

We keep modules small and well separated:
core contains shared data structures, settings and errors
topology contains the document loader and validator
namespace contains paths, the registry and subnet allocation
controlplane contains the libvirt adapter and an in-memory double
fabric contains the graph, tier roles and segment building
provision contains boot config generation and domain deployers
orchestrator contains the deployment pipeline and verification
reconcile contains orphan detection
lifecycle contains stop, start, destroy and summaries
"""
