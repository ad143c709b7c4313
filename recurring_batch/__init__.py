"""
recurring_batch -- Scheduling for the recurring-order engine.

Provides pure schedule evaluation and an in-process polling scheduler
that runs due policies through the kernel's PolicyCycleRunner, several
policies in parallel.

Architecture:
    recurring_batch/ is a top-level package.  Nothing in recurring_kernel/
    imports from recurring_batch.  This is the layer that wires
    recurring_config settings into kernel services.
"""
