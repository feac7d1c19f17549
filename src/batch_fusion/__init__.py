"""batch_fusion — rule-based PET/CT pairing and parallel fusion-job launcher.

Reads one representative DICOM header per series folder, pairs primary
(PET) and secondary (CT) series of the same study according to an XML rule
file, and launches one external fusion job per pair while keeping the number
of running jobs under a configured limit.

Typical usage::

    from batch_fusion.config import BatchConfig
    from batch_fusion.records import discover_records
    from batch_fusion.matching import find_matching_studies
    from batch_fusion.supervisor import ProcessSupervisor
    from batch_fusion.dispatch import dispatch_pairs

    cfg        = BatchConfig.from_yaml("/etc/batch_fusion/config.yaml")
    records    = discover_records(cfg)
    pairs      = find_matching_studies(records, cfg.rule_file)
    supervisor = ProcessSupervisor(cfg)
    result     = dispatch_pairs(pairs, cfg.max_jobs, supervisor.launch, supervisor.count_running)
"""

__version__ = "0.1.0"
