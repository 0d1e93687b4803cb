from typing import Dict

from fastapi.concurrency import run_in_threadpool

from vmplane.services.hypervisor import require_vm


async def vm_health(hypervisor, inventory_path: str) -> Dict:
    """{cpu, mem, storage, alive} straight from the hypervisor's quick stats."""
    vm_ref = await run_in_threadpool(require_vm, hypervisor, inventory_path)
    stats = await run_in_threadpool(hypervisor.quick_stats, vm_ref)
    return {key: stats.get(key, {}) for key in ("cpu", "mem", "storage", "alive")}
