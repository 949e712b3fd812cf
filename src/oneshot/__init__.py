"""Single-use, exclusively-bound execution workers for job schedulers.

A queued work item that needs a dedicated worker gets one freshly minted
node, bound to that item only. The node looks schedulable right away, but
the real bootstrap is postponed until the item's execution record exists,
so launch output and launch failures land in the item's own log. The node
is torn down as soon as the item completes.
"""

__version__ = "0.3.0"
