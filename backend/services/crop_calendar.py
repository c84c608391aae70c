"""
Crop Calendar — Static Market Domain Tables

Minimum support prices, festival windows, sowing/harvest months and
per-commodity price profiles. Used to annotate the time series, to compute
calendar features and to drive the synthetic history fallback.
"""

import datetime


# MSP data (2024-25 prices in ₹/quintal), keyed by upper-case commodity
MSP_DATA = {
    'PADDY': 2300,
    'WHEAT': 2275,
    'JOWAR': 3180,
    'BAJRA': 2625,
    'MAIZE': 2225,
    'RAGI': 4290,
    'ARHAR': 7550,
    'MOONG': 8682,
    'URAD': 7400,
    'GROUNDNUT': 6783,
    'SOYABEAN': 4892,
    'SUNFLOWER': 7280,
    'COTTON': 7121,
    'SUGARCANE': 315,
    'MUSTARD': 5650,
}

# Approximate festival windows, inclusive "MM-DD" ranges within one calendar year.
# Ranges are compared as strings, so a window crossing Dec 31 would never match.
FESTIVAL_PERIODS = [
    {'start': '01-14', 'end': '01-15', 'name': 'Makar Sankranti'},
    {'start': '03-20', 'end': '03-25', 'name': 'Holi'},
    {'start': '04-10', 'end': '04-15', 'name': 'Baisakhi'},
    {'start': '08-15', 'end': '08-20', 'name': 'Raksha Bandhan'},
    {'start': '09-15', 'end': '09-25', 'name': 'Ganesh Chaturthi'},
    {'start': '10-15', 'end': '10-25', 'name': 'Dussehra'},
    {'start': '10-25', 'end': '11-05', 'name': 'Diwali'},
    {'start': '11-10', 'end': '11-15', 'name': 'Guru Nanak Jayanti'},
    {'start': '12-25', 'end': '12-26', 'name': 'Christmas'},
]

# months are 1-indexed (Jan=1, Dec=12)
CROP_CALENDAR = {
    'PADDY': {'sowing': [6, 7], 'harvest': [10, 11, 12]},
    'WHEAT': {'sowing': [10, 11], 'harvest': [3, 4]},
    'MAIZE': {'sowing': [6, 7], 'harvest': [9, 10]},
    'COTTON': {'sowing': [4, 5, 6], 'harvest': [10, 11, 12]},
    'GROUNDNUT': {'sowing': [6, 7], 'harvest': [10, 11]},
    'SOYABEAN': {'sowing': [6, 7], 'harvest': [9, 10]},
    'MUSTARD': {'sowing': [9, 10], 'harvest': [2, 3]},
    'SUGARCANE': {'sowing': [2, 3, 10], 'harvest': [11, 12, 1, 2, 3, 4]},
    'ONION': {'sowing': [6, 7, 10, 11], 'harvest': [1, 2, 3, 4, 5]},
    'POTATO': {'sowing': [10, 11], 'harvest': [1, 2, 3]},
    'TOMATO': {'sowing': [6, 7, 8, 9], 'harvest': [10, 11, 12, 1, 2]},
}

# Price profiles per commodity:
#   base_price         typical modal price (₹/quintal)
#   seasonal_strength  amplitude of the annual cycle as a fraction of base
#   volatility         typical day-to-day noise as a fraction of base
#   min_ratio/max_ratio  min/max price band around the modal price
COMMODITY_PROFILES = {
    'Paddy':     {'base_price': 2200,  'seasonal_strength': 0.04, 'volatility': 0.02, 'min_ratio': 0.92, 'max_ratio': 1.08},
    'Rice':      {'base_price': 3500,  'seasonal_strength': 0.03, 'volatility': 0.02, 'min_ratio': 0.93, 'max_ratio': 1.07},
    'Wheat':     {'base_price': 2400,  'seasonal_strength': 0.04, 'volatility': 0.02, 'min_ratio': 0.93, 'max_ratio': 1.07},
    'Cotton':    {'base_price': 6500,  'seasonal_strength': 0.05, 'volatility': 0.03, 'min_ratio': 0.92, 'max_ratio': 1.08},
    'Maize':     {'base_price': 2100,  'seasonal_strength': 0.05, 'volatility': 0.03, 'min_ratio': 0.92, 'max_ratio': 1.08},
    'Onion':     {'base_price': 2500,  'seasonal_strength': 0.15, 'volatility': 0.08, 'min_ratio': 0.80, 'max_ratio': 1.20},
    'Potato':    {'base_price': 1800,  'seasonal_strength': 0.10, 'volatility': 0.05, 'min_ratio': 0.85, 'max_ratio': 1.15},
    'Tomato':    {'base_price': 3000,  'seasonal_strength': 0.20, 'volatility': 0.10, 'min_ratio': 0.75, 'max_ratio': 1.25},
    'Soybean':   {'base_price': 4500,  'seasonal_strength': 0.05, 'volatility': 0.03, 'min_ratio': 0.92, 'max_ratio': 1.08},
    'Groundnut': {'base_price': 5500,  'seasonal_strength': 0.05, 'volatility': 0.03, 'min_ratio': 0.92, 'max_ratio': 1.08},
    'Chilli':    {'base_price': 12000, 'seasonal_strength': 0.10, 'volatility': 0.06, 'min_ratio': 0.85, 'max_ratio': 1.15},
    'Turmeric':  {'base_price': 8000,  'seasonal_strength': 0.08, 'volatility': 0.05, 'min_ratio': 0.88, 'max_ratio': 1.12},
    'Sugarcane': {'base_price': 350,   'seasonal_strength': 0.02, 'volatility': 0.01, 'min_ratio': 0.95, 'max_ratio': 1.05},
    'Mustard':   {'base_price': 5000,  'seasonal_strength': 0.05, 'volatility': 0.03, 'min_ratio': 0.92, 'max_ratio': 1.08},
    'Jowar':     {'base_price': 2800,  'seasonal_strength': 0.04, 'volatility': 0.03, 'min_ratio': 0.92, 'max_ratio': 1.08},
    'Bajra':     {'base_price': 2300,  'seasonal_strength': 0.04, 'volatility': 0.03, 'min_ratio': 0.92, 'max_ratio': 1.08},
}

DEFAULT_PROFILE = {
    'base_price': 2500, 'seasonal_strength': 0.05, 'volatility': 0.04,
    'min_ratio': 0.90, 'max_ratio': 1.10,
}


def msp_for(commodity):
    """MSP for a commodity (case-insensitive), or None when it has no MSP."""
    if not commodity:
        return None
    return MSP_DATA.get(commodity.upper())


def is_festival_period(day):
    month_day = day.strftime('%m-%d')
    return any(f['start'] <= month_day <= f['end'] for f in FESTIVAL_PERIODS)


def festival_name(day):
    month_day = day.strftime('%m-%d')
    for f in FESTIVAL_PERIODS:
        if f['start'] <= month_day <= f['end']:
            return f['name']
    return None


def season_flags(commodity, day):
    """Returns (is_sowing, is_harvest) for the commodity in the month of `day`."""
    calendar = CROP_CALENDAR.get((commodity or '').upper(), {'sowing': [], 'harvest': []})
    return day.month in calendar['sowing'], day.month in calendar['harvest']


def commodity_profile(commodity):
    """Price profile for a commodity; unknown commodities get DEFAULT_PROFILE."""
    if commodity:
        for name, profile in COMMODITY_PROFILES.items():
            if name.lower() == commodity.lower():
                return dict(profile)
    return dict(DEFAULT_PROFILE)


def week_of_year(day):
    """Weeks elapsed since Jan 1, rounded up (Jan 1 itself is week 0)."""
    elapsed = (day - datetime.date(day.year, 1, 1)).days
    return -(-elapsed // 7)
