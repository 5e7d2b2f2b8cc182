"""
Sample cores for first-time users.
"""


def _series(depths, d18o, mgca):
    return [{'depth': d, 'delta18O': o, 'mgCaRatio': m} for d, o, m in zip(depths, d18o, mgca)]


SAMPLE_CORES = [
    {
        'id': 'ODP-982A',
        'name': 'Rockall Plateau Sediments',
        'location': {'lat': 57.51, 'lon': -15.87},
        'water_depth': 1134,
        'project': 'ODP Leg 162',
        'sections': [
            {
                'name': 'Hole A, Section 1',
                'section_depth': 0,
                'sample_interval': 10,
                'recovery_date': '1995-08-12',
                'epoch': 'Holocene',
                'geological_period': 'Interglacial',
                'age_range': '0-12 ka',
                'lithology': 'Nannofossil ooze',
                'munsell_color': '10YR 6/2',
                'data_points': _series(
                    [0, 10, 20, 30, 40, 50],
                    [3.21, 3.25, 3.30, 3.48, 3.90, 4.35],
                    [2.91, 2.88, 2.80, 2.62, 2.31, 1.98],
                ),
                'microfossil_records': [],
            },
            {
                'name': 'Hole B, Section 1',
                'section_depth': 35,
                'sample_interval': 10,
                'recovery_date': '1995-08-14',
                'epoch': 'Pleistocene',
                'geological_period': 'Glacial',
                'age_range': '10-25 ka',
                'lithology': 'Foraminiferal clay',
                'munsell_color': '5Y 5/1',
                'data_points': _series(
                    [35, 45, 55, 65, 75],
                    [3.62, 4.05, 4.48, 4.71, 4.80],
                    [2.48, 2.15, 1.86, 1.70, 1.66],
                ),
                'microfossil_records': [],
            },
        ],
    },
    {
        'id': 'MD95-2042',
        'name': 'Iberian Margin',
        'location': {'lat': 37.80, 'lon': -10.17},
        'water_depth': 3146,
        'project': 'IMAGES I',
        'sections': [
            {
                'name': 'Section 1',
                'section_depth': 0,
                'sample_interval': 5,
                'recovery_date': '1995-06-03',
                'epoch': 'Pleistocene',
                'geological_period': 'Indeterminate',
                'age_range': '0-40 ka',
                'lithology': 'Hemipelagic mud',
                'data_points': _series(
                    [0, 5, 10, 15, 20],
                    [2.95, 3.10, 3.62, 4.12, 4.40],
                    [3.40, 3.22, 2.71, 2.25, 2.02],
                ),
                'microfossil_records': [],
            },
        ],
    },
]
