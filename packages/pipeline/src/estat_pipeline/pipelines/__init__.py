"""
estat_pipeline.pipelines — End-to-end pipeline orchestrators.

Each dataset module exports a run() async function that enumerates its
work units from the catalog and hands them to the PipelineCoordinator.

    from estat_pipeline.pipelines import areamap, mesh

    summary = await areamap.run(years=[2020])
    summary = await mesh.run(level=3, year=2020, survey="国勢調査")
"""
